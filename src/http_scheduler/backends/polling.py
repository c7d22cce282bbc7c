import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from http_scheduler.backends.base import BaseBackend, utc_now
from http_scheduler.config import CONCURRENCY_CEILING, SchedulerConfig
from http_scheduler.coordinator import RetryCoordinator, Transition
from http_scheduler.domain.execution import ExecutionResult
from http_scheduler.domain.schedule import DueEntry
from http_scheduler.domain.task import Task, TaskStatus
from http_scheduler.errors import TaskNotFoundError
from http_scheduler.executors.http import HttpTaskExecutor
from http_scheduler.executors.protocol import TaskExecutor
from http_scheduler.notifiers.protocol import Notifier
from http_scheduler.schedule_stores.protocol import ScheduleStore
from http_scheduler.schedule_stores.sqlalchemy import SqlAlchemyScheduleStore
from http_scheduler.storages.protocol import Storage
from http_scheduler.storages.sqlalchemy import SqlAlchemyStorage

logger = logging.getLogger(__name__)


class PollingBackend(BaseBackend):
    """
    Backend running the scheduler loop with asyncio.

    Every ``poll_interval`` seconds the loop claims as many due entries as there are free
    execution slots and runs each one as an independent asyncio task, so a slow or failing
    attempt never holds up polling or its siblings.
    """

    def __init__(self, storage: Storage, schedule_store: ScheduleStore, executor: TaskExecutor,
                 coordinator: Optional[RetryCoordinator] = None, notifier: Optional[Notifier] = None,
                 concurrency: int = 5, poll_interval: float = 1.0, reconcile_on_start: bool = True,
                 default_max_retry: int = 3, clock: Callable[[], datetime] = utc_now):
        super().__init__(storage, schedule_store, default_max_retry, clock)
        if not 1 <= concurrency <= CONCURRENCY_CEILING:
            raise ValueError(f"concurrency must be between 1 and {CONCURRENCY_CEILING}")
        self.executor: TaskExecutor = executor
        self.coordinator: RetryCoordinator = coordinator or RetryCoordinator(storage, schedule_store, notifier)
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.reconcile_on_start = reconcile_on_start
        self.scheduler_task: Optional[asyncio.Task] = None
        self.is_running: bool = False
        self.in_flight: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: SchedulerConfig, notifier: Optional[Notifier] = None) -> "PollingBackend":
        storage = SqlAlchemyStorage(config.database_url)
        schedule_store = SqlAlchemyScheduleStore(config.schedule_url, config.lease_ttl_seconds)
        coordinator = RetryCoordinator(storage, schedule_store, notifier, config.retry_offset_hours)
        return cls(
            storage,
            schedule_store,
            HttpTaskExecutor(config.send_timeout_seconds),
            coordinator=coordinator,
            concurrency=min(config.concurrency, config.max_concurrency),
            poll_interval=config.poll_interval_seconds,
            reconcile_on_start=config.reconcile_on_start,
            default_max_retry=config.default_max_retry,
        )

    def __del__(self):
        if self.scheduler_task and not self.scheduler_task.done():
            self.scheduler_task.cancel()

    async def start(self):
        """
        Start the backend scheduler.
        """
        if isinstance(self.storage, SqlAlchemyStorage):
            await self.storage.create_tables()
        if isinstance(self.schedule_store, SqlAlchemyScheduleStore):
            await self.schedule_store.create_tables()
        if not self.is_running:
            if self.reconcile_on_start:
                await self.reconcile(self.clock())
            self.is_running = True
            self.scheduler_task = asyncio.create_task(self._scheduler_loop())
            logger.info("PollingBackend started (concurrency=%d, poll_interval=%ss)",
                        self.concurrency, self.poll_interval)

    async def stop(self):
        """
        Stop polling and wait for in-flight attempts to finish.
        """
        if self.is_running:
            self.is_running = False
            if self.scheduler_task:
                self.scheduler_task.cancel()
                try:
                    await self.scheduler_task
                except asyncio.CancelledError:
                    pass
            await asyncio.gather(*self.in_flight, return_exceptions=True)
            self.in_flight.clear()
            logger.info("PollingBackend stopped.")

    async def _scheduler_loop(self):
        """
        Main scheduler loop that polls for due entries.
        """
        while self.is_running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in scheduler loop")
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Claim due entries for the free execution slots and dispatch them.

        Returns:
            List[asyncio.Task]: The dispatches started by this poll.
        """
        free_slots = self.concurrency - len(self.in_flight)
        if free_slots <= 0:
            return []
        entries = await self.schedule_store.poll_due(now or self.clock(), free_slots)
        dispatches = []
        for entry in entries:
            dispatch = asyncio.create_task(self._dispatch(entry, now))
            self.in_flight.add(dispatch)
            dispatch.add_done_callback(self.in_flight.discard)
            dispatches.append(dispatch)
        return dispatches

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """
        Poll once and wait until every dispatched attempt is done.

        Returns:
            int: The number of entries processed.
        """
        dispatches = await self.poll_once(now)
        await asyncio.gather(*dispatches)
        return len(dispatches)

    async def _dispatch(self, entry: DueEntry, now: Optional[datetime] = None) -> None:
        try:
            await self.process_entry(entry, now)
        except TaskNotFoundError as e:
            logger.warning("Dropping due entry: %s", e)
        except Exception:
            # The claim is left to expire so the entry is polled again after the lease
            logger.exception("Error processing due entry for task %s", entry.task_id)

    async def process_entry(self, entry: DueEntry, now: Optional[datetime] = None) -> Optional[Transition]:
        """
        Run one attempt for a claimed entry.

        Raises:
            TaskNotFoundError: If the entry's task no longer exists. The entry is released first.
        """
        task = await self.storage.get_task(entry.task_id)
        if task is None:
            await self.schedule_store.ack(entry)
            raise TaskNotFoundError(entry.task_id)

        started_at = now or self.clock()
        if task.is_terminal:
            logger.warning("Task %s is already %s, dropping stale entry", task.id, task.status.value)
            await self.schedule_store.ack(entry)
            return None
        current = await self.schedule_store.get_entry(task.id)
        if current is None or current.claim_token != entry.claim_token:
            # Cancelled or re-armed since the poll; whoever replaced it owns the task now
            logger.warning("Claim on task %s was superseded, skipping this entry", task.id)
            return None
        if task.status == TaskStatus.RETRY and task.next_execution_at > started_at:
            logger.warning("Task %s polled before its retry time, re-arming for %s",
                           task.id, task.next_execution_at.isoformat())
            await self.schedule_store.arm(task.id, task.next_execution_at)
            return None

        running = self.coordinator.begin(task)
        if not await self.storage.update_task(running, expected_status=task.status,
                                              expected_updated_at=task.updated_at):
            # The claim is left to expire so the entry is polled again against a fresh read
            logger.warning("Task %s changed while being claimed, skipping this entry", task.id)
            return None

        logger.info("Executing task %s attempt %d/%d", task.id, running.attempt_number, running.max_retry)
        result = await self._execute(running)
        return await self.coordinator.apply(running, result, entry, now or self.clock())

    async def _execute(self, task: Task) -> ExecutionResult:
        try:
            return await self.executor.execute(task)
        except Exception as e:
            logger.exception("Executor raised for task %s", task.id)
            return ExecutionResult.failed(f"unexpected error: {e}", 0)
