import logging
from datetime import datetime
from typing import Any

from http_scheduler.domain.task import Task
from http_scheduler.notifiers.protocol import Notifier

logger = logging.getLogger(__name__)


class LoggingNotifier(Notifier):
    """
    Notifier that writes outcomes to the log. Used when no other notifier is configured.
    """

    async def notify_success(self, task: Task, response: Any, response_time_ms: int) -> None:
        logger.info("Task %s (%s) completed in %dms", task.id, task.name, response_time_ms)

    async def notify_failure(self, task: Task, error: str, attempt_number: int, max_retry: int) -> None:
        logger.warning("Task %s (%s) failed after %d/%d attempts: %s",
                       task.id, task.name, attempt_number, max_retry, error)

    async def notify_retry(self, task: Task, error: str, next_execution_at: datetime,
                           attempt_number: int, max_retry: int) -> None:
        logger.info("Task %s (%s) attempt %d/%d failed, retrying at %s: %s",
                    task.id, task.name, attempt_number, max_retry, next_execution_at.isoformat(), error)
