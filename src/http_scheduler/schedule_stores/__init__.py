from .protocol import ScheduleStore
from .sqlalchemy import SqlAlchemyScheduleStore, InMemoryScheduleStore

__all__ = ["ScheduleStore", "SqlAlchemyScheduleStore", "InMemoryScheduleStore"]
