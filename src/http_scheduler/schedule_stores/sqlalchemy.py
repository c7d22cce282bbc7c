import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import Column, String, DateTime, delete, insert, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select

from http_scheduler.domain.schedule import DueEntry
from http_scheduler.schedule_stores.protocol import ScheduleStore
from http_scheduler.storages.sqlalchemy import from_db_time, to_db_time

logger = logging.getLogger(__name__)

Base = declarative_base()


class ScheduleEntryModel(Base):
    __tablename__ = 'schedule_entries'

    # One entry per task: arming again replaces it
    task_id = Column(String, primary_key=True)
    fire_at = Column(DateTime, nullable=False, index=True)
    claim_token = Column(String)
    claimed_until = Column(DateTime)


class SqlAlchemyScheduleStore(ScheduleStore):
    """
    Durable schedule backed by a relational table.

    Claims are taken with a conditional UPDATE on the row, so concurrent pollers
    sharing the database never claim the same entry twice.
    """

    def __init__(self, db_url: str, lease_ttl_seconds: float = 30.0):
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.engine = create_async_engine(db_url)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def arm(self, task_id: str, fire_at: datetime) -> None:
        values = {"fire_at": to_db_time(fire_at), "claim_token": None, "claimed_until": None}
        rearm = (
            update(ScheduleEntryModel)
            .where(ScheduleEntryModel.task_id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.async_session() as session:
            result = await session.execute(rearm)
            if result.rowcount == 0:
                try:
                    await session.execute(insert(ScheduleEntryModel).values(task_id=task_id, **values))
                    await session.commit()
                except IntegrityError:
                    # A concurrent arm inserted the row first; replace it instead
                    await session.rollback()
                    await session.execute(rearm)
                    await session.commit()
            else:
                await session.commit()
        logger.debug("Armed task %s for %s", task_id, fire_at.isoformat())

    async def cancel(self, task_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(ScheduleEntryModel).where(ScheduleEntryModel.task_id == task_id))
            await session.commit()
            return result.rowcount > 0

    async def poll_due(self, now: datetime, limit: int) -> List[DueEntry]:
        if limit <= 0:
            return []
        db_now = to_db_time(now)
        claimable = (
            ScheduleEntryModel.fire_at <= db_now,
            or_(ScheduleEntryModel.claimed_until.is_(None), ScheduleEntryModel.claimed_until <= db_now),
        )
        claimed: List[DueEntry] = []
        async with self.async_session() as session:
            result = await session.execute(
                select(ScheduleEntryModel.task_id, ScheduleEntryModel.fire_at)
                .where(*claimable)
                .order_by(ScheduleEntryModel.fire_at)
                .limit(limit)
            )
            candidates = result.all()
            claimed_until = db_now + self.lease_ttl
            for task_id, fire_at in candidates:
                token = uuid.uuid4().hex
                # The claimable condition is re-checked by the UPDATE itself; losing the race updates no row
                outcome = await session.execute(
                    update(ScheduleEntryModel)
                    .where(ScheduleEntryModel.task_id == task_id, *claimable)
                    .values(claim_token=token, claimed_until=claimed_until)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount == 1:
                    claimed.append(DueEntry(
                        task_id=task_id,
                        fire_at=from_db_time(fire_at),
                        claim_token=token,
                        claimed_until=from_db_time(claimed_until)
                    ))
            await session.commit()
        return claimed

    async def ack(self, entry: DueEntry) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                delete(ScheduleEntryModel).where(
                    ScheduleEntryModel.task_id == entry.task_id,
                    ScheduleEntryModel.claim_token == entry.claim_token
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def get_entry(self, task_id: str) -> Optional[DueEntry]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleEntryModel).filter_by(task_id=task_id))
            db_entry = result.scalar_one_or_none()
            if db_entry is None:
                return None
            return DueEntry(
                task_id=db_entry.task_id,
                fire_at=from_db_time(db_entry.fire_at),
                claim_token=db_entry.claim_token,
                claimed_until=from_db_time(db_entry.claimed_until)
            )


class InMemoryScheduleStore(SqlAlchemyScheduleStore):
    def __init__(self, lease_ttl_seconds: float = 30.0):
        super().__init__("sqlite+aiosqlite:///:memory:", lease_ttl_seconds)
