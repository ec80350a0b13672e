"""Tests for the channel-based trading runner."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from updown_engine.apps.trader.models import (
    Fill,
    Liquidity,
    MarketRetired,
    MarketTick,
    TokenBook,
)
from updown_engine.apps.trader.runner import RunnerEvent, TradingRunner
from updown_engine.core.models import TokenSide

_MARKET = "mkt-1"
_ASSET = "BTC"


def _make_tick(ts: float = 1.0) -> MarketTick:
    """Create a minimal tick."""
    book = TokenBook(token_id="up", best_bid=Decimal("0.4"), best_ask=Decimal("0.5"))
    return MarketTick(
        market_id=_MARKET,
        asset=_ASSET,
        ts=ts,
        sec_remaining=600,
        strike=Decimal(1),
        spot=Decimal(1),
        up=book,
        down=TokenBook(token_id="down", best_bid=Decimal("0.4"), best_ask=Decimal("0.5")),
    )


def _make_fill() -> Fill:
    """Create a minimal fill."""
    return Fill(
        market_id=_MARKET,
        asset=_ASSET,
        order_id="oid",
        token=TokenSide.UP,
        price=Decimal("0.5"),
        size=Decimal(1),
        fee_usd=Decimal(0),
        liquidity=Liquidity.MAKER,
        ts=2.0,
    )


def _make_strategy(order: list[str]) -> MagicMock:
    """Create a strategy mock recording the order of calls."""
    strategy = MagicMock()

    async def _on_tick(tick: MarketTick) -> None:
        order.append(f"tick:{tick.ts}")

    strategy.on_tick = AsyncMock(side_effect=_on_tick)
    strategy.on_fill = MagicMock(side_effect=lambda f: order.append("fill"))
    strategy.cleanup_market = MagicMock(side_effect=lambda m, a: order.append("retire"))
    strategy.cleanup_stale_orders = AsyncMock(return_value=0)
    strategy.get_stats = MagicMock(return_value={})
    return strategy


class TestTradingRunner:
    """Tests for event dispatch and lifecycle."""

    @pytest.mark.asyncio
    async def test_drain_preserves_order(self) -> None:
        """Events are applied in the order they were published."""
        order: list[str] = []
        runner = TradingRunner(_make_strategy(order))
        await runner.publish(_make_tick(1.0))
        await runner.publish(_make_fill())
        await runner.publish(_make_tick(3.0))
        await runner.publish(MarketRetired(_MARKET, _ASSET))

        applied = await runner.drain()

        assert applied == 4  # noqa: PLR2004
        assert order == ["tick:1.0", "fill", "tick:3.0", "retire"]
        assert runner.processed == 4  # noqa: PLR2004

    @pytest.mark.asyncio
    async def test_tracks_and_untracks_tokens(self) -> None:
        """Ticks register tokens with the user feed and retirement removes them."""
        feed = MagicMock()
        runner = TradingRunner(_make_strategy([]), user_feed=feed)

        await runner.process(_make_tick())
        await runner.process(MarketRetired(_MARKET, _ASSET))

        feed.track.assert_called_once_with(_MARKET, _ASSET, "up", "down")
        feed.untrack.assert_called_once_with(_MARKET)

    @pytest.mark.asyncio
    async def test_run_consumes_producers_until_shutdown(self) -> None:
        """Producer events are applied and a failing event does not stop the loop."""
        order: list[str] = []
        strategy = _make_strategy(order)
        strategy.on_fill = MagicMock(side_effect=RuntimeError("boom"))
        runner = TradingRunner(strategy, stale_cleanup_interval=3600)

        async def producer(channel: "asyncio.Queue[RunnerEvent]") -> None:
            await channel.put(_make_fill())
            await channel.put(_make_tick(5.0))
            await asyncio.sleep(0.05)
            runner.request_shutdown()

        await asyncio.wait_for(runner.run([producer]), timeout=5)

        assert order == ["tick:5.0"]
        assert runner.processed == 1
