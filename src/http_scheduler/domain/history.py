import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .task import TaskStatus, ensure_utc


class TaskHistory(BaseModel):
    """
    Immutable audit record of one execution attempt.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"hist_{uuid.uuid4().hex[:8]}", description="Unique history identifier")
    task_id: str = Field(..., description="The task this attempt belongs to")
    status: TaskStatus = Field(..., description="Outcome of this attempt")
    attempt_number: int = Field(..., ge=1, description="1-based attempt number, strictly increasing per task")
    executed_at: datetime
    response: Optional[Any] = None
    error: Optional[str] = None
    response_time_ms: int = Field(0, ge=0)
    status_code: Optional[int] = None

    @field_validator('executed_at')
    def check_timezone(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator('status')
    def check_outcome(cls, v: TaskStatus) -> TaskStatus:
        if not v.is_terminal:
            raise ValueError("History status must be either COMPLETED or FAILED")
        return v
