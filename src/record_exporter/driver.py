"""
Exporter driver: record stream -> router -> accumulator -> bulk write -> ack.

One driver owns one partition stream. Drivers may share an IndexRouter and a
TemplateManager; everything else (accumulator, in-flight batch, positions)
belongs to a single driver and is guarded by its lock.

State machine:
    IDLE -> ACCUMULATING -> FLUSHING -> ACKNOWLEDGING -> ACCUMULATING ...
    IDLE -> FAILED (template setup refused), any -> CLOSED
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .accumulator import BulkAccumulator, BulkBatch, BulkOperation
from .client import BackendClient, BulkItemResult
from .config import ExporterConfiguration
from .dlq import DeadLetterQueue
from .errors import (
    BackendError,
    ConfigurationError,
    ExporterError,
    RejectedRecordError,
    TransientBackendError,
    UnsupportedRecordType,
)
from .metrics import (
    ACKNOWLEDGED_POSITION,
    BULK_BATCH_SIZE,
    FLUSH_LATENCY_SECONDS,
    FLUSH_TOTAL,
    RECORDS_TOTAL,
)
from .models import Record
from .policy import RetryPolicy
from .router import IndexRouter
from .templates import TemplateManager

AckCallback = Callable[[int, int], object]
RejectCallback = Callable[[RejectedRecordError], object]


class DriverState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    ACKNOWLEDGING = "acknowledging"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class FlushReport:
    batch: BulkBatch
    acknowledged: Dict[int, int] = field(default_factory=dict)
    rejected: Tuple[RejectedRecordError, ...] = ()
    attempts: int = 1

    @property
    def is_success(self) -> bool:
        return not self.rejected


@dataclass
class _InFlight:
    """A drained batch that is not fully written yet.

    Outcomes settled by earlier attempts are kept, so a resume only re-sends
    the operations in `remaining`.
    """

    batch: BulkBatch
    remaining: BulkBatch
    succeeded: List[BulkItemResult] = field(default_factory=list)
    rejected: List[BulkItemResult] = field(default_factory=list)
    attempts: int = 0


def _label(value_type) -> str:
    return getattr(value_type, "value", str(value_type))


async def _maybe_await(result) -> None:
    if inspect.isawaitable(result):
        await result


class ExporterDriver:
    """
    Usage:
        client = HttpBackendClient.from_config(cfg)
        async with ExporterDriver(client, cfg, on_acknowledge=ack) as driver:
            for record in records:
                await driver.export(record)
        # final flush on exit
    """

    def __init__(
        self,
        client: BackendClient,
        config: ExporterConfiguration,
        *,
        router: Optional[IndexRouter] = None,
        templates: Optional[TemplateManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_acknowledge: Optional[AckCallback] = None,
        on_rejected: Optional[RejectCallback] = None,
        dlq: Optional[DeadLetterQueue] = None,
        name: str = "exporter",
    ):
        self._client = client
        self._config = config
        self._router = router or IndexRouter(config.index.prefix)
        self._templates = templates or TemplateManager(client, self._router, config.index)
        self._retry = retry_policy or RetryPolicy.from_config(config.retry)
        self._on_ack = on_acknowledge
        self._on_rejected = on_rejected
        if dlq is None and config.dlq_path is not None:
            dlq = DeadLetterQueue(config.dlq_path)
        self._dlq = dlq
        self._name = name

        self._acc = BulkAccumulator(max_size=config.bulk.size, max_delay=config.bulk.delay)
        self._lock = asyncio.Lock()
        self._state = DriverState.IDLE
        self._in_flight: Optional[_InFlight] = None
        self._acked: Dict[int, int] = {}
        self._deferred: Dict[int, int] = {}  # held back after a rejection
        self._timer: Optional[asyncio.Task] = None

    # --------------------------- properties

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def acknowledged_positions(self) -> Dict[int, int]:
        return dict(self._acked)

    @property
    def pending_batch(self) -> Optional[BulkBatch]:
        """Operations of a failed flush that the next flush re-sends first."""
        return self._in_flight.remaining if self._in_flight is not None else None

    @property
    def buffered(self) -> int:
        return len(self._acc)

    # --------------------------- lifecycle

    async def __aenter__(self) -> "ExporterDriver":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def start(self) -> None:
        if self._state is not DriverState.IDLE:
            return
        if self._config.index.create_template:
            try:
                await self._templates.ensure_templates()
            except ConfigurationError:
                self._state = DriverState.FAILED
                raise
        self._state = DriverState.ACCUMULATING
        if not self._acc.synchronous:
            self._timer = asyncio.create_task(self._timer_loop(), name=f"{self._name}-flush-timer")
        logger.info(
            f"[{self._name}] started (bulk.size={self._acc.max_size}, "
            f"bulk.delay={self._acc.max_delay}s, prefix={self._router.prefix})"
        )

    async def close(self) -> None:
        """Best-effort final flush, then release resources. Safe to call twice."""
        if self._state is DriverState.CLOSED:
            return
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.error(f"[{self._name}] flush timer had stopped: {exc!r}")
            self._timer = None

        if self._state is not DriverState.FAILED:
            async with self._lock:
                try:
                    # pending batch first, then the buffer in bulk.size chunks
                    while self._in_flight is not None or len(self._acc):
                        await self._flush_locked(final=True)
                except Exception as exc:
                    logger.error(f"[{self._name}] final flush failed: {exc!r}")
                try:
                    await self._release_deferred()
                except Exception as exc:
                    logger.error(f"[{self._name}] releasing held back positions failed: {exc!r}")
        self._state = DriverState.CLOSED
        logger.info(f"[{self._name}] closed (acknowledged={self._acked})")

    async def run(self, records: AsyncIterable[Record]) -> Dict[int, int]:
        """Export a whole stream, then close. Returns acknowledged positions."""
        await self.start()
        try:
            async for record in records:
                await self.export(record)
        finally:
            await self.close()
        return self.acknowledged_positions

    # --------------------------- public API

    async def export(self, record: Record) -> bool:
        """Accumulate one record; returns False if it was skipped or rejected.

        While an earlier batch is pending, it is re-sent first. If that fails
        again the error propagates and the record is not buffered, so the
        caller can hand the same record over again. If the record's own
        flush fails, the record is part of `pending_batch`.
        """
        if self._state is DriverState.IDLE:
            await self.start()
        if self._state in (DriverState.FAILED, DriverState.CLOSED):
            raise ExporterError(f"Exporter {self._name} is {self._state.value}")

        index_cfg = self._config.index
        try:
            if not index_cfg.should_index(record):
                RECORDS_TOTAL.labels(value_type=_label(record.value_type), outcome="skipped").inc()
                logger.debug(
                    f"[{self._name}] skip {record.record_type}/{record.value_type} "
                    f"at {record.partition_id}:{record.position}"
                )
                return False
            operation = BulkOperation.from_record(record, self._router)
        except UnsupportedRecordType as exc:
            await self._reject_unsupported(record, exc)
            return False

        if index_cfg.create_template:
            try:
                await self._templates.ensure_template(record.value_type)
            except ConfigurationError:
                self._state = DriverState.FAILED
                raise

        async with self._lock:
            if self._in_flight is not None:
                # still refused: raises before the record is taken
                await self._flush_locked()
            self._acc.add(operation)
            while self._acc.should_flush():
                await self._flush_locked()
        return True

    async def flush(self) -> Optional[FlushReport]:
        async with self._lock:
            return await self._flush_locked()

    # --------------------------- internals

    async def _timer_loop(self) -> None:
        while True:
            async with self._lock:
                wait = self._acc.time_until_flush()
            await asyncio.sleep(self._acc.max_delay if wait is None else max(wait, 0.001))
            async with self._lock:
                try:
                    if self._in_flight is not None:
                        await self._flush_locked()
                    while self._acc.should_flush():
                        await self._flush_locked()
                except BackendError as exc:
                    # batch stays in flight and is retried on the next trigger
                    logger.error(f"[{self._name}] timed flush failed: {exc}")
                except Exception as exc:
                    # callbacks and the DLQ may fail too; the timer keeps running
                    logger.error(f"[{self._name}] timed flush failed: {exc!r}")

    async def _flush_locked(self, final: bool = False) -> Optional[FlushReport]:
        if self._in_flight is None:
            batch = self._acc.drain()
            if not batch:
                return None
            self._in_flight = _InFlight(batch=batch, remaining=batch)
            BULK_BATCH_SIZE.observe(len(batch))

        self._state = DriverState.FLUSHING
        try:
            return await self._write_in_flight(self._in_flight, final)
        finally:
            self._state = DriverState.ACCUMULATING

    async def _write_in_flight(self, flight: _InFlight, final: bool) -> FlushReport:
        batch = flight.batch
        attempt = 0
        while True:
            attempt += 1
            flight.attempts += 1
            try:
                with FLUSH_LATENCY_SECONDS.time():
                    result = await self._client.write_bulk(flight.remaining)
                flight.succeeded.extend(result.succeeded)
                flight.rejected.extend(result.rejected)
                if result.transient:
                    flight.remaining = BulkBatch.of(item.operation for item in result.transient)
                    raise TransientBackendError(
                        f"{len(result.transient)} operation(s) failed transiently",
                        status=result.transient[0].status,
                        reason=result.transient[0].reason,
                    )
                break
            except BackendError as exc:
                retryable = self._retry.classify_retryable(exc)
                if final or not retryable or not self._retry.should_retry(attempt):
                    # settled outcomes stay with the pending operations
                    FLUSH_TOTAL.labels(outcome="transient" if retryable else "failed").inc()
                    logger.error(
                        f"[{self._name}] flush of {len(flight.remaining)} of {len(batch)} "
                        f"operation(s) failed after {attempt} attempt(s): {exc}"
                    )
                    raise
                FLUSH_TOTAL.labels(outcome="transient").inc()
                backoff_ms = self._retry.next_backoff_ms(attempt)
                logger.warning(
                    f"[{self._name}] flush attempt {attempt} failed ({exc}); "
                    f"retrying {len(flight.remaining)} operation(s) in {backoff_ms}ms"
                )
                await asyncio.sleep(backoff_ms / 1000.0)

        self._in_flight = None
        self._state = DriverState.ACKNOWLEDGING
        for item in flight.succeeded:
            RECORDS_TOTAL.labels(
                value_type=item.operation.document.get("valueType", ""), outcome="exported"
            ).inc()

        errors = tuple(
            RejectedRecordError(item.operation, status=item.status, reason=item.reason)
            for item in flight.rejected
        )
        acknowledged = self._acknowledgments(batch, errors)
        for partition, position in acknowledged.items():
            await self._acknowledge(partition, position)
        if errors:
            await self._report_rejected(errors)

        FLUSH_TOTAL.labels(outcome="partial" if errors else "success").inc()
        logger.info(
            f"[{self._name}] flushed {len(batch)} operation(s) in {flight.attempts} "
            f"attempt(s), rejected={len(errors)}, acknowledged={acknowledged}"
        )
        return FlushReport(
            batch=batch, acknowledged=acknowledged, rejected=errors, attempts=flight.attempts
        )

    def _acknowledgments(
        self, batch: BulkBatch, errors: Tuple[RejectedRecordError, ...]
    ) -> Dict[int, int]:
        """Per-partition positions safe to acknowledge after this batch.

        A rejection stops the partition's acknowledgment just before the
        rejected record; the rest of the batch is held back until that
        partition's next successful flush (or close).
        """
        first_rejected: Dict[int, int] = {}
        for err in errors:
            op = err.operation
            current = first_rejected.get(op.partition_id)
            if current is None or op.position < current:
                first_rejected[op.partition_id] = op.position

        out: Dict[int, int] = {}
        for partition, max_position in batch.positions.items():
            previous = self._deferred.pop(partition, -1)
            if partition in first_rejected:
                cutoff = first_rejected[partition]
                good = [
                    op.position
                    for op in batch.operations
                    if op.partition_id == partition and op.position < cutoff
                ]
                target = max(good + [previous])
                self._deferred[partition] = max_position
            else:
                target = max(max_position, previous)
            if target > self._acked.get(partition, -1):
                out[partition] = target
        return out

    async def _release_deferred(self) -> None:
        deferred, self._deferred = self._deferred, {}
        for partition, position in deferred.items():
            if position > self._acked.get(partition, -1):
                await self._acknowledge(partition, position)

    async def _acknowledge(self, partition: int, position: int) -> None:
        self._acked[partition] = position
        ACKNOWLEDGED_POSITION.labels(partition=str(partition)).set(position)
        if self._on_ack is not None:
            await _maybe_await(self._on_ack(partition, position))

    async def _report_rejected(self, errors: Tuple[RejectedRecordError, ...]) -> None:
        for err in errors:
            op = err.operation
            RECORDS_TOTAL.labels(
                value_type=op.document.get("valueType", ""), outcome="rejected"
            ).inc()
            logger.warning(
                f"[{self._name}] record {op.document_id} rejected by index {op.index} "
                f"(status={err.status}): {err.reason}"
            )
            if self._on_rejected is not None:
                await _maybe_await(self._on_rejected(err))
        if self._dlq is not None:
            await self._dlq.save(
                [err.operation for err in errors],
                "; ".join(f"{e.status}: {e.reason}" for e in errors),
                {"exporter": self._name},
            )

    async def reject_input(self, raw: str, exc: Exception) -> None:
        """Report an input line that could not be read as a record."""
        RECORDS_TOTAL.labels(value_type="", outcome="rejected").inc()
        logger.warning(f"[{self._name}] unreadable record rejected: {exc}")
        err = RejectedRecordError(raw, reason=str(exc))
        if self._on_rejected is not None:
            await _maybe_await(self._on_rejected(err))
        if self._dlq is not None:
            await self._dlq.save([{"raw": raw}], exc, {"exporter": self._name})

    async def _reject_unsupported(self, record: Record, exc: UnsupportedRecordType) -> None:
        RECORDS_TOTAL.labels(value_type=_label(record.value_type), outcome="rejected").inc()
        logger.warning(
            f"[{self._name}] record {record.partition_id}-{record.position} skipped: {exc}"
        )
        operation = BulkOperation(
            index="",
            document_id=f"{record.partition_id}-{record.position}",
            routing=str(record.partition_id),
            document=record.model_dump(mode="json", by_alias=True, warnings=False),
            partition_id=record.partition_id,
            position=record.position,
        )
        err = RejectedRecordError(operation, reason=str(exc))
        if self._on_rejected is not None:
            await _maybe_await(self._on_rejected(err))
        if self._dlq is not None:
            await self._dlq.save([operation], exc, {"exporter": self._name})
