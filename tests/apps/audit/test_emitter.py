"""Tests for the non-blocking audit emitter."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from updown_engine.apps.audit.emitter import AuditEmitter, event_payload, to_row
from updown_engine.apps.audit.models import ClaimAttemptRow, OrderAttemptRow, StrategyEventRow
from updown_engine.apps.audit.repository import AuditRepository
from updown_engine.apps.redeemer.models import ClaimAttemptEvent
from updown_engine.apps.trader.events import (
    KillSwitchEvent,
    KillSwitchReason,
    OrderAttemptEvent,
    SkipEvent,
    SkipReason,
)
from updown_engine.core.models import Intent, Side

_TS = 1_700_000_000.0
_MARKET = "mkt-1"


def _make_order_event() -> OrderAttemptEvent:
    """Create an accepted order attempt event."""
    return OrderAttemptEvent(
        ts=_TS,
        token_id="tok-up",
        side=Side.BUY,
        price=Decimal("0.45"),
        size=Decimal(10),
        order_type="GTC",
        success=True,
        order_id="oid-1",
        fill_status="LIVE",
        failure_reason=None,
        error="",
    )


def _make_claim_event() -> ClaimAttemptEvent:
    """Create a confirmed claim attempt event."""
    return ClaimAttemptEvent(
        ts=_TS,
        condition_id="0xaaa",
        wallet="0xproxy",
        value_usd=Decimal("5.5"),
        success=True,
        tx_hash="0xtx",
        payout_usd=Decimal("5.5"),
        error_kind=None,
        error="",
        retry_count=1,
    )


def _make_skip_event(ts: float = _TS) -> SkipEvent:
    """Create an entry skip event."""
    return SkipEvent(
        market_id=_MARKET,
        asset="BTC",
        ts=ts,
        intent=Intent.ENTRY,
        reason=SkipReason.NO_EDGE,
        details="edge 0.01 < 0.03",
    )


@pytest_asyncio.fixture
async def repo() -> AuditRepository:
    """Create an in-memory SQLite repository for testing.

    Returns:
        Initialised AuditRepository with an in-memory database.

    """
    repository = AuditRepository("sqlite+aiosqlite:///:memory:")
    await repository.init_db()
    return repository


class TestToRow:
    """Tests for event to row mapping."""

    def test_order_attempt(self) -> None:
        """Order attempts go to their own table with exact decimal strings."""
        row = to_row(_make_order_event())

        assert isinstance(row, OrderAttemptRow)
        assert row.side == "BUY"
        assert row.price == "0.45"
        assert row.fill_status == "LIVE"

    def test_claim_attempt(self) -> None:
        """Claim attempts go to the claim table."""
        row = to_row(_make_claim_event())

        assert isinstance(row, ClaimAttemptRow)
        assert row.payout_usd == "5.5"
        assert row.retry_count == 1

    def test_strategy_event_payload(self) -> None:
        """Other events are stored as JSON keyed by event type."""
        row = to_row(_make_skip_event())

        assert isinstance(row, StrategyEventRow)
        assert row.event_type == "SKIP"
        assert row.market_id == _MARKET
        assert row.payload["reason"] == "NO_EDGE"
        assert row.payload["intent"] == Intent.ENTRY.value

    def test_event_without_market(self) -> None:
        """Events without a market are stored with a null market id."""
        event = KillSwitchEvent(
            ts=_TS,
            reason=KillSwitchReason.MANUAL,
            details="operator request",
            maker_fills=3,
            taker_fills=1,
            missing_fee_fills=0,
        )

        row = to_row(event)

        assert row.event_type == "KILL_SWITCH"
        assert row.market_id is None
        assert event_payload(event)["reason"] == "MANUAL"


class TestAuditEmitter:
    """Tests for queueing, flushing and failure accounting."""

    @pytest.mark.asyncio
    async def test_flush_writes_all_tables(self, repo: AuditRepository) -> None:
        """Flushed events land in their tables."""
        emitter = AuditEmitter(repo, batch_size=2)
        emitter.emit(_make_order_event())
        emitter.emit(_make_claim_event())
        emitter.emit(_make_skip_event())

        written = await emitter.flush()

        assert written == 3  # noqa: PLR2004
        assert emitter.written == 3  # noqa: PLR2004
        assert await repo.get_order_attempt_count() == 1
        assert len(await repo.get_confirmed_claims()) == 1
        assert [e.event_type for e in await repo.get_strategy_events(_MARKET)] == ["SKIP"]

    @pytest.mark.asyncio
    async def test_full_queue_drops(self) -> None:
        """Events beyond the queue size are dropped and counted."""
        emitter = AuditEmitter(MagicMock(), queue_size=1)

        emitter.emit(_make_skip_event())
        emitter.emit(_make_skip_event())

        assert emitter.emitted == 1
        assert emitter.dropped == 1

    @pytest.mark.asyncio
    async def test_write_failure_counted(self) -> None:
        """A failed insert is counted and does not raise."""
        failing = MagicMock()
        failing.save_rows = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("x")))
        emitter = AuditEmitter(failing)
        emitter.emit(_make_skip_event())
        emitter.emit(_make_skip_event())

        written = await emitter.flush()

        assert written == 0
        assert emitter.failures == 2  # noqa: PLR2004
        assert emitter.written == 0

    @pytest.mark.asyncio
    async def test_background_writer_and_stop(self, repo: AuditRepository) -> None:
        """The writer persists events in the background and stop flushes the rest."""
        emitter = AuditEmitter(repo, flush_interval=0.01)
        await emitter.start()
        emitter.emit(_make_skip_event(_TS))
        await asyncio.sleep(0.1)
        emitter.emit(_make_skip_event(_TS + 1))

        await emitter.stop()

        events = await repo.get_strategy_events(_MARKET)
        assert [e.ts for e in events] == [_TS, _TS + 1]
        assert emitter.written == 2  # noqa: PLR2004
