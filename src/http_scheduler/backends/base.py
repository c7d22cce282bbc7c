import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.page import Page
from http_scheduler.domain.schedule import DueEntry
from http_scheduler.domain.task import Task, TaskStatus, TaskUpdate
from http_scheduler.errors import TaskNotEditableError, TaskNotFoundError
from http_scheduler.schedule_stores.protocol import ScheduleStore
from http_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

LIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RETRY, TaskStatus.RUNNING)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseBackend:
    """
    Task operations used by the API layer.

    Every live task has exactly one armed schedule entry: creating a task arms it,
    updating a PENDING task re-arms it at its (possibly new) scheduled time, and
    deleting a task cancels its entry before removing the row.
    """

    def __init__(self, storage: Storage, schedule_store: ScheduleStore, default_max_retry: int = 3,
                 clock: Callable[[], datetime] = utc_now):
        self.storage: Storage = storage
        self.schedule_store: ScheduleStore = schedule_store
        self.default_max_retry = default_max_retry
        self.clock = clock

    async def start(self):
        pass

    async def stop(self):
        pass

    async def create_task(self, task: Task) -> Task:
        if task.status != TaskStatus.PENDING or task.retry_count != 0:
            raise ValueError("New tasks must be PENDING with retry_count 0")
        if "max_retry" not in task.model_fields_set:
            task = task.model_copy(update={"max_retry": self.default_max_retry})
        await self.storage.create_task(task)
        await self.schedule_store.arm(task.id, task.scheduled_time)
        logger.info("Task %s scheduled for %s", task.id, task.scheduled_time.isoformat())
        return task

    async def get_task(self, task_id: str, user_id: Optional[str] = None) -> Task:
        task = await self.storage.get_task(task_id)
        if task is None or (user_id is not None and task.user_id != user_id):
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, user_id: Optional[str] = None, page: int = 1, limit: int = 10) -> Page[Task]:
        return await self.storage.list_tasks(user_id, page, limit)

    async def update_task(self, task_id: str, changes: TaskUpdate, user_id: Optional[str] = None) -> Task:
        task = await self.get_task(task_id, user_id)
        if not task.is_editable:
            raise TaskNotEditableError(task_id, task.status.value)

        entry = await self.schedule_store.get_entry(task_id)
        if entry is not None and entry.is_claimed and entry.claimed_until > self.clock():
            # A poller holds the entry, so the attempt is already underway
            raise TaskNotEditableError(task_id, TaskStatus.RUNNING.value)

        updated = changes.apply(task)
        if not await self.storage.update_task(updated, expected_status=TaskStatus.PENDING,
                                              expected_updated_at=task.updated_at):
            current = await self.storage.get_task(task_id)
            raise TaskNotEditableError(task_id, current.status.value if current else "deleted")
        # Arming replaces the entry and drops any expired claim on it
        await self.schedule_store.arm(task_id, updated.scheduled_time)
        logger.info("Task %s updated and rescheduled for %s", task_id, updated.scheduled_time.isoformat())
        return await self.get_task(task_id)

    async def delete_task(self, task_id: str, user_id: Optional[str] = None) -> None:
        await self.get_task(task_id, user_id)
        await self.schedule_store.cancel(task_id)
        await self.storage.delete_task(task_id)
        logger.info("Task %s cancelled and deleted", task_id)

    async def get_task_history(self, task_id: str, user_id: Optional[str] = None,
                               page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        await self.get_task(task_id, user_id)
        return await self.storage.list_history(task_id, page, limit)

    async def list_user_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        return await self.storage.list_user_history(user_id, page, limit)

    async def get_schedule_entry(self, task_id: str) -> Optional[DueEntry]:
        return await self.schedule_store.get_entry(task_id)

    async def reconcile(self, now: Optional[datetime] = None) -> int:
        """
        Arm an entry for every live task that has none, e.g. after a crash between
        saving a task and arming it. Overdue tasks fire on the next poll.

        Returns:
            int: The number of entries armed.
        """
        now = now or self.clock()
        armed = 0
        for task in await self.storage.list_tasks_by_status(LIVE_STATUSES):
            if await self.schedule_store.get_entry(task.id) is not None:
                continue
            if task.status == TaskStatus.PENDING:
                fire_at = task.scheduled_time
            elif task.status == TaskStatus.RETRY:
                fire_at = task.next_execution_at
            else:
                fire_at = now
            await self.schedule_store.arm(task.id, fire_at)
            armed += 1
        if armed:
            logger.info("Armed %d task(s) missing a schedule entry", armed)
        return armed
