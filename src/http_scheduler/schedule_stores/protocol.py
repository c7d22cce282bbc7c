from datetime import datetime
from typing import List, Optional, Protocol

from http_scheduler.domain.schedule import DueEntry


class ScheduleStore(Protocol):
    async def arm(self, task_id: str, fire_at: datetime) -> None:
        """Create or replace the single pending entry for a task, dropping any claim on it."""
        ...

    async def cancel(self, task_id: str) -> bool:
        """Remove the entry for a task. Return True if one existed."""
        ...

    async def poll_due(self, now: datetime, limit: int) -> List[DueEntry]:
        """
        Claim and return up to limit entries with fire_at <= now that are unclaimed or whose
        lease has expired. A claimed entry is not returned again until its lease expires.
        """
        ...

    async def ack(self, entry: DueEntry) -> bool:
        """Delete a claimed entry, but only while the caller's claim is still the current one."""
        ...

    async def get_entry(self, task_id: str) -> Optional[DueEntry]:
        """Retrieve the current entry for a task."""
        ...
