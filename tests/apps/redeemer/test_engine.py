"""Tests for the claim redemption engine."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from updown_engine.apps.redeemer.engine import ClaimRedemptionEngine, classify_claim_error
from updown_engine.apps.redeemer.models import (
    ClaimAttemptEvent,
    ClaimErrorKind,
    ClaimRecord,
    RedeemerConfig,
)
from updown_engine.clients.polymarket import BlockchainError, PolymarketAPIError, Position
from updown_engine.clients.polymarket.models import GasQuote, PayoutEvent, RedemptionReceipt

_PROXY = "0xproxy"
_SIGNER = "0xsigner"
_CID_A = "0x" + "a" * 64
_CID_B = "0x" + "b" * 64
_CID_C = "0x" + "c" * 64
_TX = "0xtx"
_NOW = 1_700_000_000.0
_BACKOFF = 30.0
_DELAY = 3.0


class _Clock:
    """Manually advanced clock."""

    def __init__(self, now: float = _NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _RecordingSink:
    """Collect emitted events in memory."""

    def __init__(self) -> None:
        self.events: list[object] = []

    def emit(self, event: object) -> None:
        self.events.append(event)


def _make_position(
    condition_id: str,
    value: str = "5",
    wallet: str = _PROXY,
    *,
    redeemable: bool = True,
) -> Position:
    """Create a position row."""
    return Position(
        condition_id=condition_id,
        token_id="tok",
        outcome="Up",
        outcome_index=0,
        size=Decimal(value),
        current_value=Decimal(value),
        redeemable=redeemable,
        title=f"Market {condition_id[:6]}",
        wallet=wallet,
    )


def _make_receipt(status: int = 1, payout: str | None = "5") -> RedemptionReceipt:
    """Create a mined receipt with an optional payout event."""
    payouts = (
        (PayoutEvent(redeemer=_PROXY, condition_id=_CID_A, index_sets=(1, 2), payout=Decimal(payout)),)
        if payout is not None
        else ()
    )
    return RedemptionReceipt(
        tx_hash=_TX,
        status=status,
        block_number=123,
        gas_used=90_000,
        effective_gas_price=30,
        payouts=payouts,
    )


def _make_client(
    positions: dict[str, list[Position]] | None = None,
    *,
    affordable: bool = True,
) -> MagicMock:
    """Create a client whose redemptions succeed."""
    by_wallet = positions if positions is not None else {_PROXY: [_make_position(_CID_A)]}
    client = MagicMock()
    client.wallets = MagicMock(return_value=list(by_wallet) or [_PROXY])
    client.get_positions = AsyncMock(side_effect=lambda wallet: by_wallet.get(wallet, []))
    client.quote_redemption_gas = AsyncMock(
        return_value=GasQuote(
            max_fee_per_gas=100, gas_limit=300_000, balance_wei=10**18 if affordable else 1
        )
    )
    client.submit_redemption = AsyncMock(return_value=_TX)
    client.wait_for_redemption = AsyncMock(return_value=_make_receipt())
    return client


def _make_engine(
    client: MagicMock,
    config: RedeemerConfig | None = None,
    clock: _Clock | None = None,
    sink: _RecordingSink | None = None,
    store: MagicMock | None = None,
) -> tuple[ClaimRedemptionEngine, AsyncMock]:
    """Create an engine with a fake clock and a non-blocking sleep."""
    sleep = AsyncMock()
    engine = ClaimRedemptionEngine(
        client,
        config or RedeemerConfig(retry_backoff_seconds=_BACKOFF, claim_delay_seconds=_DELAY),
        audit=sink,
        store=store,
        clock=clock or _Clock(),
        sleep=sleep,
    )
    return engine, sleep


class TestClassifyClaimError:
    """Tests for redemption error classification."""

    @pytest.mark.parametrize(
        ("message", "kind", "retryable"),
        [
            ("insufficient funds for gas * price + value", ClaimErrorKind.INSUFFICIENT_FUNDS, False),
            ("nonce too low", ClaimErrorKind.NONCE, True),
            ("request timed out", ClaimErrorKind.TIMEOUT, True),
            ("429 Too Many Requests", ClaimErrorKind.RATE_LIMIT, True),
            ("502 Bad Gateway", ClaimErrorKind.RATE_LIMIT, True),
            ("service temporarily unavailable", ClaimErrorKind.RATE_LIMIT, True),
            ("execution reverted: weird", ClaimErrorKind.UNKNOWN, True),
        ],
    )
    def test_classification(self, message: str, kind: ClaimErrorKind, retryable: bool) -> None:  # noqa: FBT001
        """Only insufficient funds is terminal."""
        assert classify_claim_error(message) == (kind, retryable)


class TestRunCycle:
    """Tests for a redemption cycle."""

    @pytest.mark.asyncio
    async def test_confirms_claim(self) -> None:
        """A redeemable position is redeemed and recorded as confirmed."""
        client = _make_client()
        sink = _RecordingSink()
        engine, _ = _make_engine(client, sink=sink)

        result = await engine.run_cycle()

        assert not result.skipped
        assert result.attempted == 1
        assert result.confirmed == 1
        assert result.total_payout_usd == Decimal(5)
        client.submit_redemption.assert_awaited_once()
        assert client.submit_redemption.await_args.args[0] == _CID_A
        assert _CID_A in engine.confirmed
        event = sink.events[-1]
        assert isinstance(event, ClaimAttemptEvent)
        assert event.success
        assert event.tx_hash == _TX

    @pytest.mark.asyncio
    async def test_filters_and_orders_candidates(self) -> None:
        """Dust and unresolved rows are dropped; duplicates keep the highest value."""
        client = _make_client(
            {
                _PROXY: [
                    _make_position(_CID_A, "2"),
                    _make_position(_CID_B, "0.05"),
                    _make_position(_CID_C, "9", redeemable=False),
                ],
                _SIGNER: [_make_position(_CID_A, "7", _SIGNER), _make_position(_CID_C, "1", _SIGNER)],
            }
        )
        engine, _ = _make_engine(client)

        result = await engine.run_cycle()

        redeemed = [call.args[0] for call in client.submit_redemption.await_args_list]
        assert redeemed == [_CID_A, _CID_C]
        assert result.candidates == 2  # noqa: PLR2004

    @pytest.mark.asyncio
    async def test_claim_is_idempotent(self) -> None:
        """A confirmed condition is never redeemed again."""
        client = _make_client()
        engine, _ = _make_engine(client)

        await engine.run_cycle()
        second = await engine.run_cycle()

        assert second.attempted == 0
        client.submit_redemption.assert_awaited_once()
        stats = engine.get_claim_stats()
        assert stats.confirmed == 1
        assert stats.total_claimed_usd == Decimal(5)
        assert stats.cycles == 2  # noqa: PLR2004

    @pytest.mark.asyncio
    async def test_single_flight(self) -> None:
        """A cycle started while another runs is skipped."""
        gate = asyncio.Event()
        client = _make_client()

        async def _slow_submit(condition_id: str, quote: GasQuote) -> str:
            await gate.wait()
            return _TX

        client.submit_redemption = AsyncMock(side_effect=_slow_submit)
        engine, _ = _make_engine(client)

        first = asyncio.create_task(engine.run_cycle())
        await asyncio.sleep(0)
        second = await engine.run_cycle()
        gate.set()
        first_result = await first

        assert second.skipped
        assert second.attempted == 0
        assert first_result.confirmed == 1

    @pytest.mark.asyncio
    async def test_batch_size_and_delay(self) -> None:
        """At most ``batch_size`` claims are attempted, spaced by the claim delay."""
        client = _make_client(
            {_PROXY: [_make_position(_CID_A), _make_position(_CID_B), _make_position(_CID_C)]}
        )
        engine, sleep = _make_engine(
            client, RedeemerConfig(batch_size=2, claim_delay_seconds=_DELAY)
        )

        result = await engine.run_cycle()

        assert result.attempted == 2  # noqa: PLR2004
        sleep.assert_awaited_once_with(_DELAY)

    @pytest.mark.asyncio
    async def test_wallet_fetch_failure_skips_wallet(self) -> None:
        """A failing positions query for one wallet does not abort the cycle."""
        client = _make_client({_PROXY: [], _SIGNER: [_make_position(_CID_B, wallet=_SIGNER)]})

        async def _positions(wallet: str) -> list[Position]:
            if wallet == _PROXY:
                raise PolymarketAPIError("Data API down", 503)
            return [_make_position(_CID_B, wallet=_SIGNER)]

        client.get_positions = AsyncMock(side_effect=_positions)
        engine, _ = _make_engine(client)

        result = await engine.run_cycle()

        assert result.confirmed == 1


class TestFailures:
    """Tests for failed redemptions and retries."""

    @pytest.mark.asyncio
    async def test_insufficient_gas_not_pending(self) -> None:
        """An unaffordable claim is not submitted and not scheduled for retry."""
        client = _make_client(affordable=False)
        engine, _ = _make_engine(client)

        result = await engine.run_cycle()

        outcome = result.outcomes[0]
        assert not outcome.success
        assert outcome.error_kind is ClaimErrorKind.INSUFFICIENT_FUNDS
        assert not outcome.retryable
        client.submit_redemption.assert_not_awaited()
        assert engine.pending_retries == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("receipt", "kind"),
        [
            (None, ClaimErrorKind.TIMEOUT),
            (_make_receipt(status=0), ClaimErrorKind.REVERTED),
            (_make_receipt(payout=None), ClaimErrorKind.NO_PAYOUT_EVENT),
        ],
    )
    async def test_receipt_failures_retry(
        self, receipt: RedemptionReceipt | None, kind: ClaimErrorKind
    ) -> None:
        """Missing, reverted or payout-less receipts are scheduled for retry."""
        client = _make_client()
        client.wait_for_redemption = AsyncMock(return_value=receipt)
        engine, _ = _make_engine(client)

        result = await engine.run_cycle()

        assert result.outcomes[0].error_kind is kind
        pending = engine.pending_retries[_CID_A]
        assert pending.retry_count == 1
        assert pending.next_attempt_at == _NOW + _BACKOFF
        assert _CID_A not in engine.confirmed

    @pytest.mark.asyncio
    async def test_chain_error_classified(self) -> None:
        """A raised chain error is classified from its message."""
        client = _make_client()
        client.submit_redemption = AsyncMock(
            side_effect=BlockchainError("Failed to submit redemption: nonce too low")
        )
        engine, _ = _make_engine(client)

        result = await engine.run_cycle()

        assert result.outcomes[0].error_kind is ClaimErrorKind.NONCE
        assert _CID_A in engine.pending_retries

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self) -> None:
        """A pending claim is retried only once its backoff has elapsed."""
        clock = _Clock()
        client = _make_client()
        client.wait_for_redemption = AsyncMock(side_effect=[None, _make_receipt()])
        engine, _ = _make_engine(client, clock=clock)
        await engine.run_cycle()

        early = await engine.run_cycle()
        assert early.attempted == 0

        clock.now += _BACKOFF
        retried = await engine.run_cycle()

        assert retried.confirmed == 1
        assert engine.pending_retries == {}
        assert _CID_A in engine.confirmed

    @pytest.mark.asyncio
    async def test_linear_backoff_then_abandon(self) -> None:
        """Backoff grows linearly and the claim is abandoned after max retries."""
        clock = _Clock()
        sink = _RecordingSink()
        client = _make_client()
        client.wait_for_redemption = AsyncMock(return_value=None)
        engine, _ = _make_engine(
            client,
            RedeemerConfig(max_retries=2, retry_backoff_seconds=_BACKOFF),
            clock=clock,
            sink=sink,
        )

        await engine.run_cycle()
        clock.now += _BACKOFF
        await engine.run_cycle()
        assert engine.pending_retries[_CID_A].next_attempt_at == clock.now + 2 * _BACKOFF

        clock.now += 2 * _BACKOFF
        await engine.run_cycle()

        assert engine.pending_retries == {}
        assert engine.get_claim_stats().abandoned == 1
        final = await engine.run_cycle()
        assert final.attempted == 0
        retry_counts = [e.retry_count for e in sink.events if isinstance(e, ClaimAttemptEvent)]
        assert retry_counts == [0, 1, 2]


class TestLifecycle:
    """Tests for persistence and the periodic loop."""

    @pytest.mark.asyncio
    async def test_load_confirmed_prevents_reclaim(self) -> None:
        """Claims confirmed in an earlier run are not redeemed again."""
        store = MagicMock()
        store.get_confirmed_claims = AsyncMock(
            return_value=[ClaimRecord(_CID_A, _TX, Decimal(5), _NOW - 100)]
        )
        client = _make_client()
        engine, _ = _make_engine(client, store=store)

        loaded = await engine.load_confirmed()
        result = await engine.run_cycle()

        assert loaded == 1
        assert result.attempted == 0
        client.submit_redemption.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        """The loop runs a cycle on start and stops cleanly."""
        client = _make_client()
        engine = ClaimRedemptionEngine(client, RedeemerConfig(interval_seconds=3600))

        await engine.start()
        await asyncio.sleep(0.01)
        await engine.stop()

        assert engine.get_claim_stats().cycles == 1
        assert _CID_A in engine.confirmed
