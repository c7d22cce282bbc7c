from datetime import datetime
from typing import Any, Protocol

from http_scheduler.domain.task import Task


class Notifier(Protocol):
    """
    Receives terminal and retry outcomes of tasks. Calls are fire-and-forget for the
    scheduler: a raising notifier is logged and never affects task state.
    """

    async def notify_success(self, task: Task, response: Any, response_time_ms: int) -> None:
        ...

    async def notify_failure(self, task: Task, error: str, attempt_number: int, max_retry: int) -> None:
        ...

    async def notify_retry(self, task: Task, error: str, next_execution_at: datetime,
                           attempt_number: int, max_retry: int) -> None:
        ...
