from .task import Task, TaskStatus, TaskUpdate, HttpMethod
from .history import TaskHistory
from .execution import ExecutionResult
from .schedule import DueEntry
from .page import Page

__all__ = ["Task", "TaskStatus", "TaskUpdate", "HttpMethod", "TaskHistory", "ExecutionResult", "DueEntry", "Page"]
