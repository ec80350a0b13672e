"""Best-effort, non-blocking audit emitter.

``emit`` never awaits and never raises: events go onto a bounded queue and
a background task converts them to rows and writes them in batches.  A full
queue drops the event; a failed write drops the batch.  Both are counted so
that audit trouble is visible without ever stalling trading.
"""

import asyncio
import dataclasses
import logging
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from updown_engine.apps.audit.models import ClaimAttemptRow, OrderAttemptRow, StrategyEventRow
from updown_engine.apps.audit.repository import AuditRepository, AuditRow
from updown_engine.apps.redeemer.models import ClaimAttemptEvent
from updown_engine.apps.trader.events import OrderAttemptEvent

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 10_000
_DEFAULT_BATCH_SIZE = 100
_DEFAULT_FLUSH_INTERVAL = 1.0


def _jsonable(value: Any) -> Any:
    """Convert event field values into JSON-compatible primitives."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple | list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return value


def event_payload(event: object) -> dict[str, Any]:
    """Return a dataclass event as a JSON-compatible dict."""
    if not dataclasses.is_dataclass(event) or isinstance(event, type):
        return {"repr": repr(event)}
    return {f.name: _jsonable(getattr(event, f.name)) for f in dataclasses.fields(event)}


def to_row(event: object) -> AuditRow:
    """Map an event onto the table it belongs in.

    Args:
        event: Any event emitted by the trading or redemption engines.

    Returns:
        An unsaved ORM row.

    """
    if isinstance(event, OrderAttemptEvent):
        return OrderAttemptRow(
            ts=event.ts,
            token_id=event.token_id,
            side=event.side.value,
            price=str(event.price),
            size=str(event.size),
            order_type=event.order_type,
            success=event.success,
            order_id=event.order_id,
            fill_status=event.fill_status,
            failure_reason=event.failure_reason,
            error=event.error,
        )
    if isinstance(event, ClaimAttemptEvent):
        return ClaimAttemptRow(
            ts=event.ts,
            condition_id=event.condition_id,
            wallet=event.wallet,
            value_usd=str(event.value_usd),
            success=event.success,
            tx_hash=event.tx_hash,
            payout_usd=str(event.payout_usd),
            error_kind=event.error_kind,
            error=event.error,
            retry_count=event.retry_count,
        )
    payload = event_payload(event)
    return StrategyEventRow(
        event_type=getattr(event, "event_type", type(event).__name__),
        market_id=payload.get("market_id"),
        asset=payload.get("asset"),
        ts=float(payload.get("ts") or 0.0),
        payload=payload,
    )


class AuditEmitter:
    """Queue events and persist them from a background task.

    Args:
        repository: Destination for rows.
        queue_size: Events held before new ones are dropped.
        batch_size: Rows written per insert.
        flush_interval: Seconds to wait for more events before writing a
            partial batch.

    """

    def __init__(
        self,
        repository: AuditRepository,
        *,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        flush_interval: float = _DEFAULT_FLUSH_INTERVAL,
    ) -> None:
        """Initialize the emitter with an empty queue."""
        self._repo = repository
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=queue_size)
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._task: asyncio.Task[None] | None = None
        self._collecting: list[object] = []
        self.emitted = 0
        self.written = 0
        self.dropped = 0
        self.failures = 0

    def emit(self, event: object) -> None:
        """Queue an event without blocking; drop it when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue full; dropped %s (%d dropped so far)",
                getattr(event, "event_type", type(event).__name__),
                self.dropped,
            )
            return
        self.emitted += 1

    async def start(self) -> None:
        """Create tables and start the background writer."""
        if self._task is not None:
            return
        await self._repo.init_db()
        self._task = asyncio.create_task(self._writer(), name="audit-writer")
        logger.info("Audit emitter started")

    async def stop(self) -> None:
        """Stop the writer and flush whatever is still queued."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.flush()
        logger.info(
            "Audit emitter stopped: %d written, %d dropped, %d failed",
            self.written,
            self.dropped,
            self.failures,
        )

    async def flush(self) -> int:
        """Write every queued event now and return how many were written."""
        total = 0
        if self._collecting:
            batch, self._collecting = self._collecting, []
            total += await self._write(batch)
        while not self._queue.empty():
            batch = [self._queue.get_nowait()]
            while len(batch) < self._batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            total += await self._write(batch)
        return total

    async def _writer(self) -> None:
        while True:
            self._collecting = [await self._queue.get()]
            try:
                while len(self._collecting) < self._batch_size:
                    self._collecting.append(
                        await asyncio.wait_for(self._queue.get(), timeout=self._flush_interval)
                    )
            except TimeoutError:
                pass
            batch, self._collecting = self._collecting, []
            await self._write(batch)

    async def _write(self, batch: list[object]) -> int:
        rows: list[AuditRow] = []
        for event in batch:
            try:
                rows.append(to_row(event))
            except (TypeError, ValueError, AttributeError):
                self.failures += 1
                logger.exception("Unserialisable audit event %r", event)
        try:
            await self._repo.save_rows(rows)
        except (SQLAlchemyError, OSError):
            self.failures += len(rows)
            logger.exception("Failed to write %d audit rows", len(rows))
            return 0
        self.written += len(rows)
        return len(rows)
