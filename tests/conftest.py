import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
import pytest_asyncio

from http_scheduler.domain.execution import ExecutionResult
from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.page import Page
from http_scheduler.domain.schedule import DueEntry
from http_scheduler.domain.task import Task, TaskStatus
from http_scheduler.schedule_stores.sqlalchemy import InMemoryScheduleStore
from http_scheduler.storages.sqlalchemy import InMemoryStorage

NOW = datetime(2025, 7, 26, 12, 0, tzinfo=timezone.utc)


class ScriptedExecutor:
    """
    Executor returning queued results in order, then ``default``.
    """

    def __init__(self):
        self.results: List[ExecutionResult] = []
        self.default = ExecutionResult.completed({"ok": True}, 200, 5)
        self.calls: List[Task] = []

    async def execute(self, task: Task) -> ExecutionResult:
        self.calls.append(task)
        if self.results:
            return self.results.pop(0)
        return self.default


class RecordingNotifier:
    def __init__(self):
        self.events: List[Tuple[Any, ...]] = []

    async def notify_success(self, task, response, response_time_ms):
        self.events.append(("success", task.id, response_time_ms))

    async def notify_failure(self, task, error, attempt_number, max_retry):
        self.events.append(("failure", task.id, error, attempt_number, max_retry))

    async def notify_retry(self, task, error, next_execution_at, attempt_number, max_retry):
        self.events.append(("retry", task.id, error, next_execution_at, attempt_number, max_retry))


class FakeStorage:
    """
    Dict-backed Storage. Methods never await, so each call is atomic under asyncio.
    """

    def __init__(self):
        self.tasks: Dict[str, Task] = {}
        self.history: List[TaskHistory] = []

    def _stamp(self, task: Task) -> Task:
        stamp = datetime.now(timezone.utc)
        previous = self.tasks.get(task.id)
        if previous is not None and previous.updated_at is not None and stamp <= previous.updated_at:
            stamp = previous.updated_at + timedelta(microseconds=1)
        return task.model_copy(update={"updated_at": stamp})

    async def create_task(self, task: Task) -> str:
        self.tasks[task.id] = self._stamp(task)
        return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    async def update_task(self, task: Task, expected_status: Optional[TaskStatus] = None,
                          expected_updated_at: Optional[datetime] = None) -> bool:
        current = self.tasks.get(task.id)
        if current is None or (expected_status is not None and current.status != expected_status):
            return False
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            return False
        self.tasks[task.id] = self._stamp(task)
        return True

    async def delete_task(self, task_id: str) -> bool:
        self.history = [h for h in self.history if h.task_id != task_id]
        return self.tasks.pop(task_id, None) is not None

    async def list_tasks(self, user_id=None, page=1, limit=10) -> Page[Task]:
        tasks = [t for t in self.tasks.values() if user_id is None or t.user_id == user_id]
        start = (page - 1) * limit
        return Page[Task](items=tasks[start:start + limit], page=page, limit=limit, total=len(tasks))

    async def list_tasks_by_status(self, statuses: Iterable[TaskStatus]) -> List[Task]:
        wanted = set(statuses)
        return [t for t in self.tasks.values() if t.status in wanted]

    async def record_attempt(self, task: Task, history: TaskHistory) -> bool:
        if task.id not in self.tasks:
            return False
        if any(h.task_id == history.task_id and h.attempt_number == history.attempt_number for h in self.history):
            raise ValueError(f"duplicate attempt {history.attempt_number} for task {history.task_id}")
        self.tasks[task.id] = self._stamp(task)
        self.history.append(history)
        return True

    async def list_history(self, task_id, page=1, limit=10) -> Page[TaskHistory]:
        items = [h for h in self.history if h.task_id == task_id]
        return Page[TaskHistory](items=items, page=page, limit=limit, total=len(items))

    async def list_user_history(self, user_id, page=1, limit=10) -> Page[TaskHistory]:
        items = [h for h in self.history if self.tasks[h.task_id].user_id == user_id]
        return Page[TaskHistory](items=items, page=page, limit=limit, total=len(items))

    def history_for(self, task_id: str) -> List[TaskHistory]:
        return [h for h in self.history if h.task_id == task_id]


class FakeScheduleStore:
    """
    Dict-backed ScheduleStore with the same lease semantics as the SQL store.
    """

    def __init__(self, lease_ttl_seconds: float = 30.0):
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.entries: Dict[str, DueEntry] = {}

    async def arm(self, task_id: str, fire_at: datetime) -> None:
        self.entries[task_id] = DueEntry(task_id=task_id, fire_at=fire_at)

    async def cancel(self, task_id: str) -> bool:
        return self.entries.pop(task_id, None) is not None

    async def poll_due(self, now: datetime, limit: int) -> List[DueEntry]:
        due = sorted(
            (e for e in self.entries.values()
             if e.fire_at <= now and (e.claimed_until is None or e.claimed_until <= now)),
            key=lambda e: e.fire_at
        )[:max(limit, 0)]
        claimed = []
        for entry in due:
            claim = entry.model_copy(update={"claim_token": uuid.uuid4().hex, "claimed_until": now + self.lease_ttl})
            self.entries[entry.task_id] = claim
            claimed.append(claim)
        return claimed

    async def ack(self, entry: DueEntry) -> bool:
        current = self.entries.get(entry.task_id)
        if current is None or current.claim_token != entry.claim_token:
            return False
        del self.entries[entry.task_id]
        return True

    async def get_entry(self, task_id: str) -> Optional[DueEntry]:
        return self.entries.get(task_id)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_schedule_store() -> FakeScheduleStore:
    return FakeScheduleStore()


@pytest_asyncio.fixture
async def sqlite_storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.dispose()


@pytest_asyncio.fixture
async def sqlite_schedule_store():
    store = InMemoryScheduleStore(lease_ttl_seconds=30)
    await store.create_tables()
    yield store
    await store.dispose()


@pytest.fixture
def make_task(now: datetime):
    def _make_task(**overrides) -> Task:
        fields = {
            "name": "Ping webhook",
            "url": "https://example.com/hook",
            "method": "POST",
            "headers": {"X-Source": "tests"},
            "body": {"hello": "world"},
            "scheduled_time": now,
            "user_id": "user_1",
        }
        fields.update(overrides)
        return Task(**fields)
    return _make_task
