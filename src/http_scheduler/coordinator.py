import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from http_scheduler.domain.execution import ExecutionResult
from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.schedule import DueEntry
from http_scheduler.domain.task import Task, TaskStatus
from http_scheduler.errors import RetryExhaustedError
from http_scheduler.notifiers.log import LoggingNotifier
from http_scheduler.notifiers.protocol import Notifier
from http_scheduler.schedule_stores.protocol import ScheduleStore
from http_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


class Transition(BaseModel):
    """
    Outcome of one attempt: the task state to save, the history record to append
    and, for RETRY, when the schedule entry must fire again.
    """
    task: Task
    history: TaskHistory
    rearm_at: Optional[datetime] = None

    @property
    def status(self) -> TaskStatus:
        return self.task.status


class RetryCoordinator:
    """
    Drives a task through RUNNING -> COMPLETED | RETRY | FAILED.

    Retries use a fixed offset rather than exponential backoff: every failed attempt that
    still has budget left is retried ``retry_offset_hours`` after it finished.
    """

    def __init__(self, storage: Storage, schedule_store: ScheduleStore,
                 notifier: Optional[Notifier] = None, retry_offset_hours: float = 1.0):
        self.storage = storage
        self.schedule_store = schedule_store
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.retry_offset = timedelta(hours=retry_offset_hours)

    def begin(self, task: Task) -> Task:
        """
        PENDING/RETRY -> RUNNING. The pending retry time is consumed by this attempt.
        """
        return task.model_copy(update={"status": TaskStatus.RUNNING, "next_execution_at": None})

    def plan_retry(self, task: Task, now: datetime) -> datetime:
        """
        Next fire time after a failed attempt.

        Raises:
            RetryExhaustedError: If the failed attempt was the last one allowed by max_retry.
        """
        attempts = task.retry_count + 1
        if attempts >= task.max_retry:
            raise RetryExhaustedError(task.id, attempts, task.max_retry)
        return now + self.retry_offset

    def transition(self, task: Task, result: ExecutionResult, now: datetime) -> Transition:
        """
        Apply an executor result to a RUNNING task. Pure: nothing is persisted.
        """
        history = TaskHistory(
            task_id=task.id,
            status=result.status,
            attempt_number=task.retry_count + 1,
            executed_at=now,
            response=result.response,
            error=result.error,
            response_time_ms=result.response_time_ms,
            status_code=result.status_code
        )

        if result.succeeded:
            completed = task.model_copy(update={
                "status": TaskStatus.COMPLETED,
                "response": result.response,
                "error": None,
                "last_executed_at": now,
                "next_execution_at": None,
            })
            return Transition(task=completed, history=history)

        failed = {
            "retry_count": task.retry_count + 1,
            "error": result.error,
            "last_executed_at": now,
        }
        try:
            next_execution_at = self.plan_retry(task, now)
        except RetryExhaustedError as e:
            logger.debug("%s", e)
            return Transition(
                task=task.model_copy(update={**failed, "status": TaskStatus.FAILED, "next_execution_at": None}),
                history=history
            )
        return Transition(
            task=task.model_copy(update={**failed, "status": TaskStatus.RETRY, "next_execution_at": next_execution_at}),
            history=history,
            rearm_at=next_execution_at
        )

    async def apply(self, task: Task, result: ExecutionResult, entry: DueEntry, now: datetime) -> Optional[Transition]:
        """
        Persist the outcome of an attempt, then re-arm or release its schedule entry and notify.

        The task update and its history record are written together. If the task was deleted
        while the attempt was in flight nothing is written and nothing is re-armed.

        Args:
            task (Task): The task in RUNNING state, as it was dispatched.
            result (ExecutionResult): The executor's result.
            entry (DueEntry): The claimed entry that triggered the attempt.
            now (datetime): Completion time of the attempt.
        """
        transition = self.transition(task, result, now)

        if not await self.storage.record_attempt(transition.task, transition.history):
            logger.warning("Task %s was deleted during attempt %d, dropping its outcome",
                           task.id, transition.history.attempt_number)
            await self.schedule_store.ack(entry)
            return None

        if transition.rearm_at is not None:
            await self.schedule_store.arm(task.id, transition.rearm_at)
            logger.info("Task %s attempt %d/%d failed, retry at %s", task.id,
                        transition.history.attempt_number, task.max_retry, transition.rearm_at.isoformat())
        else:
            await self.schedule_store.ack(entry)
            logger.info("Task %s %s after %d attempt(s)", task.id, transition.status.value,
                        transition.history.attempt_number)

        await self._notify(transition, result)
        return transition

    async def _notify(self, transition: Transition, result: ExecutionResult) -> None:
        task = transition.task
        attempt_number = transition.history.attempt_number
        try:
            if task.status == TaskStatus.COMPLETED:
                await self.notifier.notify_success(task, result.response, result.response_time_ms)
            elif task.status == TaskStatus.RETRY:
                await self.notifier.notify_retry(task, task.error or "", task.next_execution_at,
                                                 attempt_number, task.max_retry)
            else:
                await self.notifier.notify_failure(task, task.error or "", attempt_number, task.max_retry)
        except Exception:
            logger.exception("Notifier failed for task %s", task.id)
