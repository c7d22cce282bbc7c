from datetime import timedelta

import pytest
import pytest_asyncio

from http_scheduler.backends.base import BaseBackend
from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.task import TaskStatus, TaskUpdate
from http_scheduler.errors import TaskNotEditableError, TaskNotFoundError


@pytest_asyncio.fixture
async def backend(sqlite_storage, sqlite_schedule_store):
    backend = BaseBackend(sqlite_storage, sqlite_schedule_store)
    await backend.start()
    yield backend
    await backend.stop()


@pytest.mark.asyncio
async def test_create_task_arms_schedule(backend: BaseBackend, make_task, now):
    task = await backend.create_task(make_task(scheduled_time=now + timedelta(hours=1)))

    entry = await backend.get_schedule_entry(task.id)
    assert entry.fire_at == now + timedelta(hours=1)
    assert (await backend.get_task(task.id)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_create_task_rejects_started_tasks(backend: BaseBackend, make_task):
    with pytest.raises(ValueError):
        await backend.create_task(make_task(status=TaskStatus.COMPLETED))


@pytest.mark.asyncio
async def test_create_task_applies_default_max_retry(sqlite_storage, sqlite_schedule_store, make_task):
    backend = BaseBackend(sqlite_storage, sqlite_schedule_store, default_max_retry=5)

    defaulted = await backend.create_task(make_task())
    explicit = await backend.create_task(make_task(max_retry=2))

    assert (await backend.get_task(defaulted.id)).max_retry == 5
    assert (await backend.get_task(explicit.id)).max_retry == 2


@pytest.mark.asyncio
async def test_update_pending_task_rearms_at_new_time(backend: BaseBackend, sqlite_schedule_store, make_task, now):
    task = await backend.create_task(make_task())

    updated = await backend.update_task(task.id, TaskUpdate(scheduled_time=now + timedelta(days=1), name="Later"))

    assert updated.name == "Later"
    assert updated.url == task.url
    entry = await backend.get_schedule_entry(task.id)
    assert entry.fire_at == now + timedelta(days=1)
    assert await sqlite_schedule_store.poll_due(now + timedelta(hours=23), 10) == []
    due = await sqlite_schedule_store.poll_due(now + timedelta(days=1), 10)
    assert [e.task_id for e in due] == [task.id]


@pytest.mark.asyncio
async def test_update_without_new_time_keeps_entry(backend: BaseBackend, make_task, now):
    task = await backend.create_task(make_task())

    await backend.update_task(task.id, TaskUpdate(url="https://example.com/other"))

    entry = await backend.get_schedule_entry(task.id)
    assert entry.fire_at == now
    assert (await backend.get_task(task.id)).url == "https://example.com/other"


@pytest.mark.asyncio
async def test_update_rejects_non_pending_task(backend: BaseBackend, sqlite_storage, make_task):
    task = await backend.create_task(make_task())
    await sqlite_storage.update_task(task.model_copy(update={"status": TaskStatus.RUNNING}))

    with pytest.raises(TaskNotEditableError):
        await backend.update_task(task.id, TaskUpdate(name="Too late"))
    assert (await backend.get_task(task.id)).name == task.name


@pytest.mark.asyncio
async def test_update_rejects_task_with_claimed_entry(sqlite_storage, sqlite_schedule_store, make_task, now):
    backend = BaseBackend(sqlite_storage, sqlite_schedule_store, clock=lambda: now)
    task = await backend.create_task(make_task())
    [claimed] = await sqlite_schedule_store.poll_due(now, 1)

    with pytest.raises(TaskNotEditableError):
        await backend.update_task(task.id, TaskUpdate(scheduled_time=now + timedelta(days=1)))

    entry = await backend.get_schedule_entry(task.id)
    assert entry.claim_token == claimed.claim_token
    assert entry.fire_at == now
    assert (await backend.get_task(task.id)).scheduled_time == now


@pytest.mark.asyncio
async def test_tasks_are_scoped_to_their_user(backend: BaseBackend, make_task):
    task = await backend.create_task(make_task(user_id="user_1"))

    assert (await backend.get_task(task.id, user_id="user_1")).id == task.id
    with pytest.raises(TaskNotFoundError):
        await backend.get_task(task.id, user_id="user_2")
    with pytest.raises(TaskNotFoundError):
        await backend.delete_task(task.id, user_id="user_2")
    with pytest.raises(TaskNotFoundError):
        await backend.update_task(task.id, TaskUpdate(name="x"), user_id="user_2")


@pytest.mark.asyncio
async def test_delete_task_cancels_entry(backend: BaseBackend, sqlite_schedule_store, make_task, now):
    task = await backend.create_task(make_task())

    await backend.delete_task(task.id)

    assert await backend.get_schedule_entry(task.id) is None
    assert await sqlite_schedule_store.poll_due(now + timedelta(days=1), 10) == []
    with pytest.raises(TaskNotFoundError):
        await backend.get_task(task.id)


@pytest.mark.asyncio
async def test_history_reads(backend: BaseBackend, sqlite_storage, make_task, now):
    task = await backend.create_task(make_task())
    for attempt in (1, 2, 3):
        await sqlite_storage.record_attempt(task, TaskHistory(
            task_id=task.id, status=TaskStatus.FAILED, attempt_number=attempt,
            executed_at=now + timedelta(hours=attempt), error="boom"
        ))

    page = await backend.get_task_history(task.id, user_id="user_1", page=1, limit=2)
    assert page.total == 3
    assert [h.attempt_number for h in page.items] == [3, 2]

    everything = await backend.list_user_history("user_1")
    assert everything.total == 3
    with pytest.raises(TaskNotFoundError):
        await backend.get_task_history(task.id, user_id="user_2")


@pytest.mark.asyncio
async def test_reconcile_arms_live_tasks_without_entry(backend: BaseBackend, sqlite_storage, make_task, now):
    pending = make_task(scheduled_time=now + timedelta(minutes=5))
    retrying = make_task(status=TaskStatus.RETRY, retry_count=1, next_execution_at=now + timedelta(hours=1))
    running = make_task(status=TaskStatus.RUNNING)
    finished = make_task(status=TaskStatus.COMPLETED)
    already_armed = await backend.create_task(make_task(scheduled_time=now + timedelta(days=2)))
    for task in (pending, retrying, running, finished):
        await sqlite_storage.create_task(task)

    assert await backend.reconcile(now) == 3

    assert (await backend.get_schedule_entry(pending.id)).fire_at == now + timedelta(minutes=5)
    assert (await backend.get_schedule_entry(retrying.id)).fire_at == now + timedelta(hours=1)
    assert (await backend.get_schedule_entry(running.id)).fire_at == now
    assert await backend.get_schedule_entry(finished.id) is None
    assert (await backend.get_schedule_entry(already_armed.id)).fire_at == now + timedelta(days=2)
    assert await backend.reconcile(now) == 0
