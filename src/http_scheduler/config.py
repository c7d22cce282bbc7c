import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

# Hard ceiling on concurrently executing attempts, regardless of configuration.
CONCURRENCY_CEILING = 10


class SchedulerConfig(BaseModel):
    """
    Settings consumed by the scheduling core.

    Every field can be supplied through the environment with ``from_env``, using
    the upper-cased field name and a prefix, e.g. ``SCHEDULER_SEND_TIMEOUT_SECONDS=5``.
    """
    database_url: str = Field("sqlite+aiosqlite:///./tasks.db", description="Database holding tasks and history")
    schedule_database_url: Optional[str] = Field(None, description="Database holding schedule entries, defaults to database_url")
    send_timeout_seconds: float = Field(10.0, gt=0, description="Total timeout of one outbound HTTP call")
    retry_offset_hours: float = Field(1.0, gt=0, description="Fixed delay between a failed attempt and its retry")
    default_max_retry: int = Field(3, ge=1, description="max_retry used when a task does not set one")
    concurrency: int = Field(5, ge=1, description="Attempts executed in parallel")
    max_concurrency: int = Field(CONCURRENCY_CEILING, ge=1, le=CONCURRENCY_CEILING)
    lease_ttl_seconds: float = Field(30.0, gt=0, description="How long a claimed entry stays invisible to other pollers")
    poll_interval_seconds: float = Field(1.0, gt=0)
    reconcile_on_start: bool = Field(True, description="Arm missing entries for live tasks when the scheduler starts")

    @model_validator(mode='after')
    def check_limits(self) -> 'SchedulerConfig':
        if self.concurrency > self.max_concurrency:
            raise ValueError(f"concurrency ({self.concurrency}) cannot exceed max_concurrency ({self.max_concurrency})")
        if self.lease_ttl_seconds <= self.send_timeout_seconds:
            raise ValueError("lease_ttl_seconds must exceed send_timeout_seconds, "
                             "otherwise a running attempt can be claimed twice")
        return self

    @property
    def schedule_url(self) -> str:
        return self.schedule_database_url or self.database_url

    @classmethod
    def from_env(cls, prefix: str = "SCHEDULER_", environ: Optional[Mapping[str, str]] = None) -> 'SchedulerConfig':
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"{prefix}{name.upper()}"
            if key in environ:
                values[name] = environ[key]
        return cls.model_validate(values)
