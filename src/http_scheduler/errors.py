from typing import Optional


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ExecutionError(SchedulerError):
    """
    An outbound call did not succeed. Both subclasses consume a retry attempt.
    """
    status_code: Optional[int] = None


class TransportError(ExecutionError):
    """No HTTP response was obtained (connection refused, DNS failure, timeout)."""


class ApplicationError(ExecutionError):
    """An HTTP response was obtained but its status is outside 2xx."""

    def __init__(self, status_code: int):
        super().__init__(f"non-success status code: {status_code}")
        self.status_code = status_code


class TaskNotFoundError(SchedulerError):
    def __init__(self, task_id: str):
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class TaskNotEditableError(SchedulerError):
    def __init__(self, task_id: str, status: str):
        super().__init__(f"Cannot update task '{task_id}' that is not in pending status (status: {status})")
        self.task_id = task_id
        self.status = status


class RetryExhaustedError(SchedulerError):
    def __init__(self, task_id: str, attempts: int, max_retry: int):
        super().__init__(f"Task '{task_id}' failed after {attempts}/{max_retry} attempts")
        self.task_id = task_id
        self.attempts = attempts
        self.max_retry = max_retry
