from typing import Protocol

from http_scheduler.domain.execution import ExecutionResult
from http_scheduler.domain.task import Task


class TaskExecutor(Protocol):
    """
    Protocol class for task executors.
    """

    async def execute(self, task: Task) -> ExecutionResult:
        """
        Perform the task's outbound call and classify the outcome.

        Implementations must not raise: every failure is reported as a FAILED result.

        Args:
            task (Task): Snapshot of the task to execute.
        """
        ...
