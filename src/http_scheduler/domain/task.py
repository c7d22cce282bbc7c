import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import logging
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


def ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        logging.warning("Datetime does not include a timezone. Defaulting to UTC+0 for consistent representation. "
                        "Note: When using SQLite for storage, timezone information is discarded and values "
                        "are stored as UTC.")
        return v.replace(tzinfo=ZoneInfo("UTC"))
    return v.astimezone(ZoneInfo("UTC"))


class Task(BaseModel):
    """
    A single future HTTP call with bounded retries.
    """
    id: str = Field(default_factory=lambda: f"tsk_{uuid.uuid4().hex[:8]}", description="Unique task identifier")
    name: str = Field(..., min_length=1, description="Task name")
    url: str = Field(..., min_length=1, description="The URL to call")
    method: HttpMethod = Field(HttpMethod.GET, description="The HTTP method to use")
    headers: Dict[str, str] = Field(default_factory=dict, description="Optional headers to include in the request")
    token: Optional[SecretStr] = Field(None, description="Optional bearer token sent as the Authorization header")
    body: Optional[Any] = Field(None, description="Optional JSON body, ignored for GET requests")
    scheduled_time: datetime = Field(..., description="Time of the first execution")
    max_retry: int = Field(3, ge=1, description="Maximum number of attempts")
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = Field(0, ge=0, description="Number of failed attempts so far")
    last_executed_at: Optional[datetime] = None
    next_execution_at: Optional[datetime] = Field(None, description="Next retry time, only set while in RETRY")
    response: Optional[Any] = Field(None, description="Payload of the last successful attempt")
    error: Optional[str] = Field(None, description="Error text of the last failed attempt")
    user_id: Optional[str] = Field(None, description="Owning user reference")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(ZoneInfo("UTC")),
        description="Task creation timestamp with UTC timezone"
    )
    updated_at: Optional[datetime] = None

    @field_validator('scheduled_time', 'created_at', 'last_executed_at', 'next_execution_at', 'updated_at')
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode='after')
    def check_retry_state(self) -> 'Task':
        if self.retry_count > self.max_retry:
            raise ValueError(f"retry_count ({self.retry_count}) cannot exceed max_retry ({self.max_retry})")
        if (self.next_execution_at is not None) != (self.status == TaskStatus.RETRY):
            raise ValueError("next_execution_at must be set if and only if the task is in RETRY")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_editable(self) -> bool:
        return self.status == TaskStatus.PENDING

    @property
    def attempt_number(self) -> int:
        """Attempt number of the next (or current) execution."""
        return self.retry_count + 1

    @property
    def readable_string(self) -> str:
        task_summary = f"Task Name: '{self.name}'"
        request_details = f"Request: {self.method.value} {self.url}"
        schedule_details = f"Scheduled for {self.scheduled_time.strftime('%Y-%m-%d %H:%M:%S %Z')}"
        state_details = f"Status: {self.status.value} (attempt {self.attempt_number}/{self.max_retry})"
        return f"{task_summary}\n{request_details}\n{schedule_details}\n{state_details}"


class TaskUpdate(BaseModel):
    """
    User edits applied to a PENDING task. Unset fields are left untouched.
    """
    name: Optional[str] = Field(None, min_length=1)
    url: Optional[str] = Field(None, min_length=1)
    method: Optional[HttpMethod] = None
    headers: Optional[Dict[str, str]] = None
    token: Optional[SecretStr] = None
    body: Optional[Any] = None
    scheduled_time: Optional[datetime] = None
    max_retry: Optional[int] = Field(None, ge=1)

    @field_validator('scheduled_time')
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def apply(self, task: Task) -> Task:
        changes = self.model_dump(exclude_unset=True)
        return Task.model_validate({**task.model_dump(), **changes})
