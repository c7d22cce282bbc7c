from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, ForeignKey, UniqueConstraint, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select
from pydantic import SecretStr

from http_scheduler.domain.history import TaskHistory
from http_scheduler.domain.page import Page
from http_scheduler.domain.task import Task, TaskStatus, HttpMethod
from http_scheduler.storages.protocol import Storage

Base = declarative_base()


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Datetimes are stored as naive UTC so SQLite and PostgreSQL behave the same."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class TaskModel(Base):
    __tablename__ = 'tasks'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    method = Column(String, nullable=False, default=HttpMethod.GET.value)
    headers = Column(JSON)
    token = Column(String)
    body = Column(JSON)
    scheduled_time = Column(DateTime, nullable=False)
    max_retry = Column(Integer, nullable=False, default=3)
    status = Column(String, nullable=False, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime)
    next_execution_at = Column(DateTime)
    response = Column(JSON)
    error = Column(Text)
    user_id = Column(String, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)


class TaskHistoryModel(Base):
    __tablename__ = 'task_history'
    __table_args__ = (UniqueConstraint('task_id', 'attempt_number', name='uq_task_history_attempt'),)

    id = Column(String, primary_key=True)
    task_id = Column(String, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(String, nullable=False)
    attempt_number = Column(Integer, nullable=False)
    executed_at = Column(DateTime, nullable=False)
    response = Column(JSON)
    error = Column(Text)
    response_time_ms = Column(Integer, nullable=False, default=0)
    status_code = Column(Integer)


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_task(self, task: Task) -> str:
        async with self.async_session() as session:
            db_task = TaskModel(id=task.id, created_at=to_db_time(task.created_at))
            self._apply_task(db_task, task)
            session.add(db_task)
            await session.commit()
            return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self.async_session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                return self._db_to_task(db_task)
            return None

    async def update_task(self, task: Task, expected_status: Optional[TaskStatus] = None,
                          expected_updated_at: Optional[datetime] = None) -> bool:
        conditions = [TaskModel.id == task.id]
        if expected_status is not None:
            conditions.append(TaskModel.status == expected_status.value)
        if expected_updated_at is not None:
            conditions.append(TaskModel.updated_at == to_db_time(expected_updated_at))
        async with self.async_session() as session:
            # Single conditional UPDATE: a writer that lost the race matches no row
            result = await session.execute(
                update(TaskModel)
                .where(*conditions)
                .values(**self._task_values(task))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def delete_task(self, task_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                # SQLite does not enforce ON DELETE CASCADE unless asked to, so remove history explicitly
                await session.execute(delete(TaskHistoryModel).where(TaskHistoryModel.task_id == task_id))
                await session.delete(db_task)
                await session.commit()
                return True
            return False

    async def list_tasks(self, user_id: Optional[str] = None, page: int = 1, limit: int = 10) -> Page[Task]:
        async with self.async_session() as session:
            query = select(TaskModel)
            count_query = select(func.count()).select_from(TaskModel)
            if user_id is not None:
                query = query.filter_by(user_id=user_id)
                count_query = count_query.where(TaskModel.user_id == user_id)
            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(TaskModel.created_at.desc()).offset((page - 1) * limit).limit(limit)
            )
            items = [self._db_to_task(db_task) for db_task in result.scalars()]
            return Page[Task](items=items, page=page, limit=limit, total=total)

    async def list_tasks_by_status(self, statuses: Iterable[TaskStatus]) -> List[Task]:
        values = [status.value for status in statuses]
        async with self.async_session() as session:
            result = await session.execute(
                select(TaskModel).where(TaskModel.status.in_(values)).order_by(TaskModel.created_at)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def record_attempt(self, task: Task, history: TaskHistory) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task.id))
            db_task = result.scalar_one_or_none()
            if db_task is None:
                return False
            self._apply_task(db_task, task)
            session.add(TaskHistoryModel(
                id=history.id,
                task_id=history.task_id,
                status=history.status.value,
                attempt_number=history.attempt_number,
                executed_at=to_db_time(history.executed_at),
                response=history.response,
                error=history.error,
                response_time_ms=history.response_time_ms,
                status_code=history.status_code
            ))
            await session.commit()
            return True

    async def list_history(self, task_id: str, page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        async with self.async_session() as session:
            total = (await session.execute(
                select(func.count()).select_from(TaskHistoryModel).where(TaskHistoryModel.task_id == task_id)
            )).scalar_one()
            result = await session.execute(
                select(TaskHistoryModel)
                .filter_by(task_id=task_id)
                .order_by(TaskHistoryModel.executed_at.desc(), TaskHistoryModel.attempt_number.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [self._db_to_history(db_history) for db_history in result.scalars()]
            return Page[TaskHistory](items=items, page=page, limit=limit, total=total)

    async def list_user_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page[TaskHistory]:
        async with self.async_session() as session:
            total = (await session.execute(
                select(func.count())
                .select_from(TaskHistoryModel)
                .join(TaskModel, TaskModel.id == TaskHistoryModel.task_id)
                .where(TaskModel.user_id == user_id)
            )).scalar_one()
            result = await session.execute(
                select(TaskHistoryModel)
                .join(TaskModel, TaskModel.id == TaskHistoryModel.task_id)
                .where(TaskModel.user_id == user_id)
                .order_by(TaskHistoryModel.executed_at.desc(), TaskHistoryModel.attempt_number.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [self._db_to_history(db_history) for db_history in result.scalars()]
            return Page[TaskHistory](items=items, page=page, limit=limit, total=total)

    def _task_values(self, task: Task) -> Dict[str, Any]:
        return {
            "name": task.name,
            "url": task.url,
            "method": task.method.value,
            "headers": task.headers,
            "token": task.token.get_secret_value() if task.token is not None else None,
            "body": task.body,
            "scheduled_time": to_db_time(task.scheduled_time),
            "max_retry": task.max_retry,
            "status": task.status.value,
            "retry_count": task.retry_count,
            "last_executed_at": to_db_time(task.last_executed_at),
            "next_execution_at": to_db_time(task.next_execution_at),
            "response": task.response,
            "error": task.error,
            "user_id": task.user_id,
            # Every write gets a new updated_at, which is what guarded updates compare against
            "updated_at": datetime.now(timezone.utc).replace(tzinfo=None),
        }

    def _apply_task(self, db_task: TaskModel, task: Task) -> None:
        for key, value in self._task_values(task).items():
            setattr(db_task, key, value)

    def _db_to_task(self, db_task: TaskModel) -> Task:
        return Task(
            id=db_task.id,
            name=db_task.name,
            url=db_task.url,
            method=HttpMethod(db_task.method),
            headers=db_task.headers or {},
            token=SecretStr(db_task.token) if db_task.token is not None else None,
            body=db_task.body,
            scheduled_time=from_db_time(db_task.scheduled_time),
            max_retry=db_task.max_retry,
            status=TaskStatus(db_task.status),
            retry_count=db_task.retry_count,
            last_executed_at=from_db_time(db_task.last_executed_at),
            next_execution_at=from_db_time(db_task.next_execution_at),
            response=db_task.response,
            error=db_task.error,
            user_id=db_task.user_id,
            created_at=from_db_time(db_task.created_at),
            updated_at=from_db_time(db_task.updated_at)
        )

    def _db_to_history(self, db_history: TaskHistoryModel) -> TaskHistory:
        return TaskHistory(
            id=db_history.id,
            task_id=db_history.task_id,
            status=TaskStatus(db_history.status),
            attempt_number=db_history.attempt_number,
            executed_at=from_db_time(db_history.executed_at),
            response=db_history.response,
            error=db_history.error,
            response_time_ms=db_history.response_time_ms,
            status_code=db_history.status_code
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")
