"""Priority job queue for pending workflow runs.

Items are ordered by priority (higher first), then by enqueue time, then
by insertion sequence. An item with ``scheduled_for`` in the future stays
in the queue but is not ready until that time.

Every method is synchronous. The engine's scheduling loop is the only
consumer, so a pop can never interleave with another pop and no run is
dispatched twice.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Container, Optional


@dataclass
class JobQueueItem:
    execution_id: str
    workflow_id: str
    priority: int
    enqueued_at: datetime
    scheduled_for: Optional[datetime] = None
    sequence: int = field(default=0, compare=False)

    def is_ready(self, now: datetime) -> bool:
        return self.scheduled_for is None or self.scheduled_for <= now

    def sort_key(self) -> tuple:
        return (-self.priority, self.enqueued_at, self.sequence)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "priority": self.priority,
            "enqueued_at": self.enqueued_at.isoformat(),
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
        }


class JobQueue:
    """Pending runs waiting for a free execution slot."""

    def __init__(self):
        self._items: list[JobQueueItem] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, execution_id: object) -> bool:
        return any(item.execution_id == execution_id for item in self._items)

    def push(self, item: JobQueueItem) -> JobQueueItem:
        item.sequence = next(self._counter)
        self._items.append(item)
        self._items.sort(key=JobQueueItem.sort_key)
        return item

    def pop_ready(self, now: datetime, exclude: Container[str] = ()) -> Optional[JobQueueItem]:
        """Remove and return the best ready item, or None.

        Items whose execution id is in ``exclude`` are skipped.
        """
        for i, item in enumerate(self._items):
            if item.execution_id in exclude or not item.is_ready(now):
                continue
            return self._items.pop(i)
        return None

    def remove(self, execution_id: str) -> Optional[JobQueueItem]:
        for i, item in enumerate(self._items):
            if item.execution_id == execution_id:
                return self._items.pop(i)
        return None

    def next_scheduled_at(self) -> Optional[datetime]:
        """Earliest ``scheduled_for`` among deferred items."""
        times = [item.scheduled_for for item in self._items if item.scheduled_for is not None]
        return min(times) if times else None

    def snapshot(self) -> list[JobQueueItem]:
        """Queued items in dispatch order."""
        return list(self._items)
