"""Tests for the audit repository."""

from decimal import Decimal

import pytest
import pytest_asyncio

from updown_engine.apps.audit.models import ClaimAttemptRow, OrderAttemptRow, StrategyEventRow
from updown_engine.apps.audit.repository import AuditRepository

_BASE_TS = 1_700_000_000.0
_CID_A = "0xaaa"
_CID_B = "0xbbb"
_MARKET = "mkt-1"
_ORDER_COUNT_3 = 3


def _make_claim_row(
    condition_id: str = _CID_A,
    ts: float = _BASE_TS,
    *,
    success: bool = True,
    payout: str = "5.25",
    tx_hash: str | None = "0xtx",
) -> ClaimAttemptRow:
    """Create a claim attempt row."""
    return ClaimAttemptRow(
        ts=ts,
        condition_id=condition_id,
        wallet="0xproxy",
        value_usd=payout,
        success=success,
        tx_hash=tx_hash,
        payout_usd=payout if success else "0",
        error_kind=None if success else "timeout",
        error="" if success else "no receipt",
        retry_count=0,
    )


def _make_order_row(ts: float = _BASE_TS) -> OrderAttemptRow:
    """Create an order attempt row."""
    return OrderAttemptRow(
        ts=ts,
        token_id="tok-up",
        side="BUY",
        price="0.45",
        size="10",
        order_type="GTC",
        success=True,
        order_id="oid-1",
        fill_status="LIVE",
        failure_reason=None,
        error="",
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


class TestAuditRepository:
    """Tests for AuditRepository writes and reads."""

    @pytest.mark.asyncio
    async def test_save_and_count_orders(self, repo: AuditRepository) -> None:
        """Saved order attempts are counted."""
        await repo.save_rows([_make_order_row(_BASE_TS + i) for i in range(_ORDER_COUNT_3)])

        assert await repo.get_order_attempt_count() == _ORDER_COUNT_3

    @pytest.mark.asyncio
    async def test_save_empty_list(self, repo: AuditRepository) -> None:
        """Save an empty list without error."""
        await repo.save_rows([])

        assert await repo.get_order_attempt_count() == 0

    @pytest.mark.asyncio
    async def test_confirmed_claims_first_success_only(self, repo: AuditRepository) -> None:
        """Failures are ignored and a duplicated success is reported once."""
        await repo.save_rows(
            [
                _make_claim_row(_CID_A, _BASE_TS, success=False, tx_hash=None),
                _make_claim_row(_CID_A, _BASE_TS + 10, tx_hash="0xfirst"),
                _make_claim_row(_CID_A, _BASE_TS + 20, tx_hash="0xsecond"),
                _make_claim_row(_CID_B, _BASE_TS + 5, payout="1.5"),
            ]
        )

        claims = await repo.get_confirmed_claims()

        assert [c.condition_id for c in claims] == [_CID_B, _CID_A]
        by_cid = {c.condition_id: c for c in claims}
        assert by_cid[_CID_A].tx_hash == "0xfirst"
        assert by_cid[_CID_A].payout_usd == Decimal("5.25")
        assert by_cid[_CID_B].claimed_at == _BASE_TS + 5

    @pytest.mark.asyncio
    async def test_strategy_events_by_market(self, repo: AuditRepository) -> None:
        """Strategy events are filtered by market and returned oldest first."""
        await repo.save_rows(
            [
                StrategyEventRow(
                    event_type="SKIP", market_id=_MARKET, asset="BTC", ts=_BASE_TS + 2, payload={}
                ),
                StrategyEventRow(
                    event_type="EVAL",
                    market_id=_MARKET,
                    asset="BTC",
                    ts=_BASE_TS,
                    payload={"edge_up": "0.05"},
                ),
                StrategyEventRow(
                    event_type="EVAL", market_id="other", asset="ETH", ts=_BASE_TS, payload={}
                ),
            ]
        )

        events = await repo.get_strategy_events(_MARKET)

        assert [e.event_type for e in events] == ["EVAL", "SKIP"]
        assert events[0].payload == {"edge_up": "0.05"}

    @pytest.mark.asyncio
    async def test_init_db_idempotent(self, repo: AuditRepository) -> None:
        """Calling init_db multiple times does not raise."""
        await repo.init_db()
        await repo.init_db()

    @pytest.mark.asyncio
    async def test_close(self, repo: AuditRepository) -> None:
        """Closing the repository disposes the engine without error."""
        await repo.close()
