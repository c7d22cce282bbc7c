"""
HTTP Task Scheduling System

This module defines the core concepts and components of a scheduler for future HTTP calls.

Core Concepts:

Task:
    A Task is a single HTTP call (url, method, headers, body, optional bearer token)
    registered to run once at a scheduled time, with a bounded number of attempts.

Due entry:
    A record in the Schedule Store saying a task must fire at a given time.
    Every live task has exactly one entry. Pollers claim entries with a lease so
    a task is never executed twice at once.

Attempt:
    One execution of a Task's HTTP call. Every attempt appends one immutable
    TaskHistory record.

Relationships:
    - A Task owns its TaskHistory records, one per attempt.
    - A failed attempt with budget left moves the Task to RETRY and re-arms its entry;
      success or exhaustion of max_retry ends in COMPLETED or FAILED.
"""

from .backends import BaseBackend, PollingBackend
from .config import SchedulerConfig
from .domain import Task, TaskStatus, TaskUpdate, HttpMethod, TaskHistory, ExecutionResult, DueEntry, Page

__all__ = [
    "BaseBackend",
    "PollingBackend",
    "SchedulerConfig",
    "Task",
    "TaskStatus",
    "TaskUpdate",
    "HttpMethod",
    "TaskHistory",
    "ExecutionResult",
    "DueEntry",
    "Page",
]
