"""
File-based dead letter queue for records the backend refused.

One NDJSON line per save() call. replay() reads entries back oldest first so
an operator can inspect or re-submit them once the cause is fixed.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from loguru import logger

from .accumulator import BulkOperation


@dataclass(frozen=True)
class DLQRecord:
    items: List[Dict[str, Any]]
    error: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    ts: float = 0.0


class DeadLetterQueue:
    def __init__(self, path: Path | str, *, mkdirs: bool = True):
        self._path = Path(path)
        if mkdirs:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def save(
        self,
        operations: Sequence[Union[BulkOperation, Dict[str, Any]]],
        error: BaseException | str,
        metadata: Dict[str, Any] | None = None,
    ) -> None:
        entry = {
            "ts": time.time(),
            "error": str(error),
            "metadata": metadata or {},
            "items": [asdict(op) if is_dataclass(op) else dict(op) for op in operations],
        }
        line = json.dumps(entry, separators=(",", ":"), default=str) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.debug(f"DLQ saved {len(operations)} operation(s) to {self._path}")

    def _append(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line)

    async def replay(self, max_records: int = 1000) -> List[DLQRecord]:
        if not self._path.exists():
            return []
        text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        out: List[DLQRecord] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            raw = json.loads(line)
            out.append(
                DLQRecord(
                    items=raw.get("items", []),
                    error=raw.get("error", ""),
                    metadata=raw.get("metadata", {}),
                    ts=raw.get("ts", 0.0),
                )
            )
            if len(out) >= max_records:
                break
        return out
