from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.page import Page
from http_scheduler.domain.task import Task, TaskStatus


class Storage(Protocol):
    async def create_task(self, task: Task) -> str:
        """Create a new task and return its ID."""
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by its ID."""
        ...

    async def update_task(self, task: Task, expected_status: Optional[TaskStatus] = None,
                          expected_updated_at: Optional[datetime] = None) -> bool:
        """
        Update an existing task. When expected_status or expected_updated_at is given, the update
        only applies if the stored row still matches them, checked atomically with the write.
        Every successful write sets a new updated_at. Return True if successful, False otherwise.
        """
        ...

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its history. Return True if successful, False otherwise."""
        ...

    async def list_tasks(self, user_id: Optional[str] = None, page: int = 1, limit: int = 10) -> Page[Task]:
        """List tasks, newest first, optionally restricted to one user."""
        ...

    async def list_tasks_by_status(self, statuses: Iterable[TaskStatus]) -> List[Task]:
        """List every task currently in one of the given statuses."""
        ...

    async def record_attempt(self, task: Task, history: TaskHistory) -> bool:
        """
        Atomically save the task state produced by an attempt and append its history record.
        Return False, writing nothing, if the task no longer exists.
        """
        ...

    async def list_history(self, task_id: str, page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        """List history records of a task, most recent first."""
        ...

    async def list_user_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        """List history records across all tasks of a user, most recent first."""
        ...
