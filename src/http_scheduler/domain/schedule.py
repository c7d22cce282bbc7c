from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .task import ensure_utc


class DueEntry(BaseModel):
    """
    A Schedule Store record saying "execute task X at time T".

    This is the only command the scheduler dispatches; its payload is the task id.
    """
    task_id: str
    fire_at: datetime
    claim_token: Optional[str] = Field(None, description="Set while a poller holds the lease")
    claimed_until: Optional[datetime] = None

    @field_validator('fire_at', 'claimed_until')
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None
