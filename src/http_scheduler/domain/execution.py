from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .task import TaskStatus


class ExecutionResult(BaseModel):
    """
    Classified outcome of one outbound HTTP call.
    """
    status: TaskStatus
    response: Optional[Any] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: int = Field(0, ge=0, description="Wall-clock time spent on the call")

    @field_validator('status')
    def check_outcome(cls, v: TaskStatus) -> TaskStatus:
        if not v.is_terminal:
            raise ValueError("Status must be either COMPLETED or FAILED")
        return v

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @classmethod
    def completed(cls, response: Any, status_code: int, response_time_ms: int) -> "ExecutionResult":
        return cls(status=TaskStatus.COMPLETED, response=response, status_code=status_code,
                   response_time_ms=response_time_ms)

    @classmethod
    def failed(cls, error: str, response_time_ms: int, status_code: Optional[int] = None) -> "ExecutionResult":
        return cls(status=TaskStatus.FAILED, error=error, status_code=status_code,
                   response_time_ms=response_time_ms)
