import math
from typing import Generic, List, TypeVar

from pydantic import BaseModel, Field, computed_field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1)
    total: int = Field(0, ge=0)

    @computed_field
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)
