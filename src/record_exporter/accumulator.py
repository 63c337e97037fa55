from __future__ import annotations

from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Dict, List, Optional, Tuple

from .models import Record, record_to_dict
from .router import IndexRouter


@dataclass(frozen=True)
class BulkOperation:
    """One upsert destined for a bulk write; the id makes resends idempotent."""

    index: str
    document_id: str
    routing: str
    document: Dict[str, Any]
    partition_id: int
    position: int

    @classmethod
    def from_record(cls, record: Record, router: IndexRouter) -> "BulkOperation":
        route = router.route(record)
        return cls(
            index=route.index,
            document_id=route.document_id,
            routing=route.routing,
            document=record_to_dict(record),
            partition_id=record.partition_id,
            position=record.position,
        )


@dataclass(frozen=True)
class BulkBatch:
    operations: Tuple[BulkOperation, ...] = ()
    positions: Dict[int, int] = field(default_factory=dict)  # partition -> max position

    @classmethod
    def of(cls, operations) -> "BulkBatch":
        ops = tuple(operations)
        positions: Dict[int, int] = {}
        for op in ops:
            if op.position > positions.get(op.partition_id, -1):
                positions[op.partition_id] = op.position
        return cls(operations=ops, positions=positions)

    def __len__(self) -> int:
        return len(self.operations)

    def __bool__(self) -> bool:
        return bool(self.operations)


class BulkAccumulator:
    """
    Buffers bulk operations until the batch is full or the oldest one is too old.

    Usage:
        acc = BulkAccumulator(max_size=1000, max_delay=5.0)
        acc.add(op)
        if acc.should_flush():
            batch = acc.drain()

    Not locked: the owning driver serializes add/should_flush/drain.
    """

    def __init__(self, max_size: int = 1000, max_delay: float = 5.0, clock=monotonic):
        if max_size < 0 or max_delay < 0:
            raise ValueError("max_size and max_delay must be >= 0")
        self._max_size = max_size
        self._max_delay = max_delay
        self._clock = clock
        self._ops: List[BulkOperation] = []
        self._t0: Optional[float] = None  # time of the oldest buffered op

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def max_delay(self) -> float:
        return self._max_delay

    @property
    def synchronous(self) -> bool:
        return self._max_size <= 1 or self._max_delay <= 0

    def __len__(self) -> int:
        return len(self._ops)

    def add(self, operation: BulkOperation) -> None:
        if not self._ops:
            self._t0 = self._clock()
        self._ops.append(operation)

    def oldest_age(self) -> float:
        if self._t0 is None:
            return 0.0
        return self._clock() - self._t0

    def time_until_flush(self) -> Optional[float]:
        """Seconds until the delay trigger fires; None when empty."""
        if not self._ops:
            return None
        return max(0.0, self._max_delay - self.oldest_age())

    def should_flush(self) -> bool:
        if not self._ops:
            return False
        if self.synchronous:
            return True
        if len(self._ops) >= self._max_size:
            return True
        return self.oldest_age() >= self._max_delay

    def drain(self) -> BulkBatch:
        """Take at most max_size operations, oldest first (everything if max_size is 0)."""
        limit = self._max_size or len(self._ops)
        taken, self._ops = self._ops[:limit], self._ops[limit:]
        if not self._ops:
            self._t0 = None
        # leftovers keep the current deadline
        return BulkBatch.of(taken)
