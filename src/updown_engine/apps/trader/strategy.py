"""Per-market mispricing strategy for 15-minute Up/Down markets.

Each market walks a four-phase lifecycle::

    IDLE ──entry submitted──▶ HAS_ENTRY ──correction hedge──▶ HEDGE_IN_PROGRESS
                                                                   │
                                                       hedge fill  ▼
                                                                  DONE

On every tick an ``IDLE`` market is checked for an entry: a trusted fair
price, enough edge on one side, no existing position, no order in flight,
a tight and deep enough book, and time left inside the entry window.  A
market with an entry is only ever evaluated for a hedge; hedging an
exposed position always takes priority over opening a new one.

A process-wide kill switch watches execution quality.  A fill without fee
data, or a maker ratio that degrades over a trailing window, disables new
entries until ``reset_kill_switch`` is called.  Hedges remain allowed.

Every skipped evaluation is recorded with a reason code.  Skips are the
normal outcome, not errors.
"""

import logging
import math
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import replace
from decimal import Decimal
from typing import Any

from updown_engine.apps.trader.config import StrategyConfig
from updown_engine.apps.trader.events import (
    CorrectionEvent,
    EvalEvent,
    FillEvent,
    KillSwitchEvent,
    KillSwitchReason,
    OrderEvent,
    SkipEvent,
    SkipReason,
    StateChangeEvent,
)
from updown_engine.apps.trader.execution import OrderExecutionClient
from updown_engine.apps.trader.ledger import ExposureLedger
from updown_engine.apps.trader.models import (
    Fill,
    KillSwitchState,
    Liquidity,
    MarketState,
    MarketTick,
    OrderResult,
    Phase,
)
from updown_engine.apps.trader.order_tracker import OrderTracker
from updown_engine.apps.trader.protocols import AuditSink, FairPriceModel, MakerPriceValidator
from updown_engine.core.models import ONE, ZERO, Intent, Side, TokenSide

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset({Phase.HAS_ENTRY}),
    Phase.HAS_ENTRY: frozenset({Phase.HEDGE_IN_PROGRESS}),
    Phase.HEDGE_IN_PROGRESS: frozenset({Phase.DONE}),
    Phase.DONE: frozenset(),
}
_RETIRED_MEMORY = 1024


def hedge_size(entry_shares: Decimal, config: StrategyConfig) -> Decimal:
    """Return the hedge size for an entry.

    ``max(min_shares, floor(min(entry_shares * ratio, max_shares)))``.
    """
    hedge = config.hedge
    raw = min(entry_shares * hedge.ratio, hedge.max_shares)
    return max(hedge.min_shares, Decimal(math.floor(raw)))


class MispricingStrategy:
    """Entry, hedge and kill-switch decisions across all active markets.

    Args:
        config: Strategy thresholds.
        ledger: Shared exposure ledger gating every order.
        executor: Order execution client.
        tracker: In-flight order registry.
        fair_model: Fair-price lookup.
        price_validator: Maker price computation and book checks.
        audit: Optional sink for structured events.
        clock: Wall-clock source for kill-switch timestamps.

    """

    def __init__(  # noqa: PLR0913
        self,
        config: StrategyConfig,
        ledger: ExposureLedger,
        executor: OrderExecutionClient,
        tracker: OrderTracker,
        fair_model: FairPriceModel,
        price_validator: MakerPriceValidator,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the strategy with no active markets."""
        self._config = config
        self._ledger = ledger
        self._executor = executor
        self._tracker = tracker
        self._fair = fair_model
        self._validator = price_validator
        self._audit = audit
        self._clock = clock
        self._states: dict[str, MarketState] = {}
        self._active: dict[str, set[str]] = {}
        self._kill = KillSwitchState()
        self._liquidity_window: deque[bool] = deque(maxlen=config.kill_switch.maker_ratio_window)
        self._stats: Counter[str] = Counter()
        self._retired: deque[str] = deque(maxlen=_RETIRED_MEMORY)

    # -- public accessors -------------------------------------------------

    def get_state(self, market_id: str) -> MarketState | None:
        """Return a copy of a market's state, if tracked."""
        state = self._states.get(market_id)
        return replace(state) if state is not None else None

    @property
    def kill_switch(self) -> KillSwitchState:
        """Return a copy of the kill-switch state."""
        return replace(self._kill)

    def disable_entries(self, details: str = "") -> None:
        """Trip the kill switch by hand; hedges stay enabled."""
        self._trip(KillSwitchReason.MANUAL, details or "operator request")

    def reset_kill_switch(self) -> None:
        """Re-enable entries and clear the execution-quality counters."""
        logger.warning("Kill switch reset (was: %s)", self._kill.reason)
        self._kill = KillSwitchState()
        self._liquidity_window.clear()

    def get_stats(self) -> dict[str, Any]:
        """Return counters describing strategy activity."""
        phases = Counter(state.phase.value for state in self._states.values())
        return {
            **dict(self._stats),
            "markets": len(self._states),
            "phases": dict(phases),
            "in_flight": len(self._tracker),
            "entries_disabled": self._kill.entries_disabled,
            "kill_reason": self._kill.reason,
            "total_evals": self._kill.total_evals,
            "stale_book_skips": self._kill.stale_book_skips,
            "maker_fills": self._kill.maker_fills,
            "taker_fills": self._kill.taker_fills,
            "missing_fee_fills": self._kill.missing_fee_fills,
        }

    # -- inputs -----------------------------------------------------------

    async def on_tick(self, tick: MarketTick) -> None:
        """Evaluate one market-data update."""
        if tick.asset not in self._config.enabled_assets or tick.market_id in self._retired:
            return
        state = self._states.get(tick.market_id)
        if state is None:
            state = MarketState(market_id=tick.market_id, asset=tick.asset, created_ts=tick.ts)
            self._states[tick.market_id] = state

        if state.phase is Phase.HAS_ENTRY:
            await self._evaluate_hedge(tick, state)
        elif state.phase is Phase.IDLE:
            await self._evaluate_entry(tick, state)

    def on_fill(self, fill: Fill) -> None:
        """Apply a fill to the ledger, the kill switch and the market state."""
        tracked = self._tracker.lookup(fill.order_id)
        intent = fill.intent or (tracked.intent if tracked is not None else None)
        self._stats["fills"] += 1
        if fill.market_id in self._retired:
            # Retired markets keep no ledger entry; a late fill must not recreate one.
            self._stats["late_fills"] += 1
            logger.info("Fill %s arrived after %s was retired", fill.order_id, fill.market_id)
        else:
            self._tracker.record_fill(fill.order_id, fill.size)
            self._ledger.on_fill(fill.market_id, fill.asset, fill.token, fill.size)
            self._ledger.increment_position(fill.market_id, fill.asset, fill.token, fill.size)
            self._ledger.assert_invariants(fill.market_id, fill.asset)

        self._emit(
            FillEvent(
                market_id=fill.market_id,
                asset=fill.asset,
                ts=fill.ts,
                order_id=fill.order_id,
                intent=intent,
                token=fill.token,
                price=fill.price,
                size=fill.size,
                fee_usd=fill.fee_usd,
                liquidity=fill.liquidity.value,
            )
        )
        self._update_kill_switch(fill)

        state = self._states.get(fill.market_id)
        if state is None:
            return
        if intent is Intent.HEDGE or (
            intent is None
            and state.phase is Phase.HEDGE_IN_PROGRESS
            and fill.token is state.hedge_token
        ):
            state.hedge_shares += fill.size
            state.hedge_avg = fill.price
            if state.phase is Phase.HEDGE_IN_PROGRESS:
                self._transition(state, Phase.DONE, "hedge_filled", fill.ts)
        elif fill.token is state.entry_token:
            self._record_entry_fill(state, fill.size, fill.price, fill.ts)

    def cleanup_market(self, market_id: str, asset: str) -> None:
        """Forget a retired market across strategy, tracker and ledger."""
        self._states.pop(market_id, None)
        self._active.get(asset, set()).discard(market_id)
        self._tracker.clear_market(market_id)
        self._ledger.clear_market(market_id, asset)
        if market_id not in self._retired:
            self._retired.append(market_id)
        logger.info("Market %s/%s cleaned up", asset, market_id)

    async def cleanup_stale_orders(self) -> int:
        """Cancel and release in-flight orders older than the stale timeout.

        Returns:
            Number of stale slots released.

        """
        released = 0
        for order in self._tracker.find_stale(self._config.stale_order_timeout_seconds):
            if order.order_id is not None:
                if not await self._executor.cancel_order(order.order_id):
                    logger.warning(
                        "Stale %s order %s on %s still resting; retrying next sweep",
                        order.intent.value,
                        order.order_id,
                        order.market_id,
                    )
                    continue
                self._ledger.on_cancel_open(
                    order.market_id, order.asset, order.token, order.size - order.filled
                )
            self._tracker.release(*order.key)
            released += 1
            logger.info(
                "Released stale %s %s slot on %s (order %s)",
                order.intent.value,
                order.token.value,
                order.market_id,
                order.order_id,
            )
        return released

    # -- entry ------------------------------------------------------------

    async def _evaluate_entry(self, tick: MarketTick, state: MarketState) -> None:  # noqa: PLR0911
        cfg = self._config.entry
        self._kill.total_evals += 1
        self._stats["evals"] += 1

        if self._kill.entries_disabled:
            self._skip(tick, Intent.ENTRY, SkipReason.KILL_SWITCH_ACTIVE, self._kill.reason or "")
            return
        if tick.sec_remaining < cfg.min_sec_remaining:
            self._skip(tick, Intent.ENTRY, SkipReason.TOO_LATE, f"{tick.sec_remaining:.0f}s left")
            return
        if tick.sec_remaining > cfg.max_sec_remaining:
            self._skip(tick, Intent.ENTRY, SkipReason.TOO_EARLY, f"{tick.sec_remaining:.0f}s left")
            return

        fair_up = self._trusted_fair_up(tick)
        if fair_up is None:
            self._emit_eval(tick, None, None, None, None)
            self._skip(tick, Intent.ENTRY, SkipReason.FAIR_NOT_TRUSTED)
            return

        edge_up = fair_up - tick.up.best_ask
        edge_down = (ONE - fair_up) - tick.down.best_ask
        chosen = self._choose_side(tick, edge_up, edge_down)
        self._emit_eval(tick, fair_up, edge_up, edge_down, chosen)
        if chosen is None:
            self._skip(
                tick, Intent.ENTRY, SkipReason.NO_EDGE, f"up={edge_up:.3f} down={edge_down:.3f}"
            )
            return

        exposure = self._ledger.get_effective_exposure(tick.market_id, tick.asset)
        held = tick.position.up_shares + tick.position.down_shares
        if held > ZERO or exposure.total > ZERO:
            self._skip(tick, Intent.ENTRY, SkipReason.POSITION_EXISTS)
            return
        active = self._active.setdefault(tick.asset, set())
        if tick.market_id not in active and len(active) >= cfg.max_concurrent_markets_per_asset:
            self._skip(tick, Intent.ENTRY, SkipReason.MAX_CONCURRENT_MARKETS, f"{len(active)}")
            return
        if self._tracker.has(tick.market_id, chosen, Intent.ENTRY):
            self._skip(tick, Intent.ENTRY, SkipReason.ORDER_IN_FLIGHT)
            return

        book = tick.book(chosen)
        if book.spread > cfg.max_spread:
            self._skip(tick, Intent.ENTRY, SkipReason.SPREAD_TOO_WIDE, f"{book.spread}")
            return
        if min(book.bid_depth, book.ask_depth) < cfg.min_depth:
            self._skip(tick, Intent.ENTRY, SkipReason.DEPTH_TOO_LOW)
            return

        decision = self._validator.maker_price(Side.BUY, book)
        if not decision.ok or decision.price is None:
            if decision.reason == "STALE_BOOK":
                self._kill.stale_book_skips += 1
            self._skip(tick, Intent.ENTRY, SkipReason.PRICE_REJECTED, decision.reason or "")
            return

        result = await self._submit(tick, Intent.ENTRY, chosen, decision.price, cfg.base_shares)
        if result is not None and result.success:
            state.entry_token = chosen
            active.add(tick.market_id)
            self._transition(state, Phase.HAS_ENTRY, "entry_submitted", tick.ts)

    def _trusted_fair_up(self, tick: MarketTick) -> Decimal | None:
        if tick.spot is None:
            return None
        estimate = self._fair.lookup(tick.asset, tick.spot - tick.strike, tick.sec_remaining)
        if estimate is None or not estimate.trusted:
            return None
        return estimate.fair_up

    def _choose_side(
        self, tick: MarketTick, edge_up: Decimal, edge_down: Decimal
    ) -> TokenSide | None:
        """Prefer the side the spot is leaning toward, unless the other edge is larger."""
        edge_min = self._config.entry.edge_min
        edges = {TokenSide.UP: edge_up, TokenSide.DOWN: edge_down}
        spot = tick.spot if tick.spot is not None else tick.strike
        preferred = TokenSide.UP if spot >= tick.strike else TokenSide.DOWN
        other = preferred.opposite
        if edges[other] >= edge_min and edges[other] > edges[preferred]:
            return other
        if edges[preferred] >= edge_min:
            return preferred
        return None

    # -- hedge ------------------------------------------------------------

    async def _evaluate_hedge(self, tick: MarketTick, state: MarketState) -> None:  # noqa: PLR0911
        cfg = self._config
        entry = state.entry_token
        if entry is None:
            return
        held = tick.position.shares(entry)
        if held > state.entry_shares:
            state.entry_shares = held
            state.entry_avg = tick.position.avg(entry) or state.entry_avg
            if state.entry_fill_ts is None:
                state.entry_fill_ts = tick.ts
        if state.entry_fill_ts is None:
            return

        since_fill = tick.ts - state.entry_fill_ts
        if since_fill < cfg.correction.min_seconds_after_fill:
            return
        if tick.sec_remaining <= cfg.hedge.deadline_sec_remaining:
            return
        fair_up = self._trusted_fair_up(tick)
        if fair_up is None or state.entry_avg is None:
            return

        entry_book = tick.book(entry)
        fair_entry = fair_up if entry is TokenSide.UP else ONE - fair_up
        edge_now = fair_entry - entry_book.best_ask
        if edge_now > cfg.correction.edge_corrected_max:
            return
        unrealized = (entry_book.mid - state.entry_avg) * state.entry_shares
        if unrealized <= cfg.correction.profit_trigger_usd:
            return

        self._emit(
            CorrectionEvent(
                market_id=tick.market_id,
                asset=tick.asset,
                ts=tick.ts,
                entry_token=entry,
                edge_now=edge_now,
                unrealized_usd=unrealized,
                sec_since_fill=since_fill,
            )
        )
        hedge_token = entry.opposite
        if self._tracker.has(tick.market_id, hedge_token, Intent.HEDGE):
            self._skip(tick, Intent.HEDGE, SkipReason.ORDER_IN_FLIGHT)
            return
        hedge_book = tick.book(hedge_token)
        if hedge_book.best_ask > cfg.hedge.max_opp_ask:
            self._skip(tick, Intent.HEDGE, SkipReason.HEDGE_TOO_EXPENSIVE, f"{hedge_book.best_ask}")
            return
        decision = self._validator.maker_price(Side.BUY, hedge_book)
        if not decision.ok or decision.price is None:
            self._skip(tick, Intent.HEDGE, SkipReason.PRICE_REJECTED, decision.reason or "")
            return
        # The best ask bounds every price the executor can improve the maker price to.
        cpp = state.entry_avg + hedge_book.best_ask
        if cpp > cfg.hedge.max_cpp:
            self._skip(tick, Intent.HEDGE, SkipReason.CPP_TOO_HIGH, f"{cpp}")
            return

        state.hedge_attempts += 1
        state.last_hedge_attempt_ts = tick.ts
        size = hedge_size(state.entry_shares, cfg)
        result = await self._submit(tick, Intent.HEDGE, hedge_token, decision.price, size)
        if result is not None and result.success:
            state.hedge_token = hedge_token
            self._transition(state, Phase.HEDGE_IN_PROGRESS, "correction", tick.ts)

    # -- order submission -------------------------------------------------

    async def _submit(
        self,
        tick: MarketTick,
        intent: Intent,
        token: TokenSide,
        price: Decimal,
        size: Decimal,
    ) -> OrderResult | None:
        """Cap-check, reserve, place, then promote or release one order.

        Returns:
            The execution result, or None when the ledger blocked the order.

        """
        market_id, asset = tick.market_id, tick.asset
        check = self._ledger.check_cap_with_effective_exposure(market_id, asset, token, size)
        self._ledger.log_order_attempt(market_id, asset, check)
        if not check.allowed:
            self._skip(tick, intent, SkipReason.CAP_BLOCKED, f"remaining={check.remaining}")
            return None
        qty = check.clamped_qty
        min_qty = (
            self._config.hedge.min_shares
            if intent is Intent.HEDGE
            else self._config.entry.min_order_shares
        )
        if qty < min_qty:
            self._skip(tick, intent, SkipReason.CAP_BLOCKED, f"clamped to {qty}")
            return None
        if not self._tracker.begin(market_id, asset, token, intent, qty):
            self._skip(tick, intent, SkipReason.ORDER_IN_FLIGHT)
            return None

        self._ledger.reserve_pending(market_id, asset, token, qty)
        book = tick.book(token)
        result = await self._executor.place_order(
            book.token_id, Side.BUY, price, qty, "GTC", post_only=True
        )
        self._emit(
            OrderEvent(
                market_id=market_id,
                asset=asset,
                ts=tick.ts,
                intent=intent,
                token=token,
                size=qty,
                best_bid=book.best_bid,
                best_ask=book.best_ask,
                price=result.price if result.price is not None else price,
                order_id=result.order_id,
                success=result.success,
            )
        )
        if result.success:
            self._stats["orders_submitted"] += 1
            self._ledger.promote_to_open(market_id, asset, token, qty)
            if result.order_id:
                self._tracker.confirm(market_id, token, intent, result.order_id)
            self._ledger.assert_invariants(market_id, asset)
            return result

        self._stats["orders_failed"] += 1
        self._ledger.on_reject_pending(market_id, asset, token, qty)
        self._tracker.release(market_id, token, intent)
        reason = result.failure_reason.value if result.failure_reason else "unknown"
        self._skip(tick, intent, SkipReason.ORDER_FAILED, reason)
        return result

    # -- state and kill switch ---------------------------------------------

    def _record_entry_fill(
        self, state: MarketState, size: Decimal, price: Decimal, ts: float
    ) -> None:
        """Accumulate entry fills into a size-weighted average."""
        if state.entry_fill_ts is None:
            state.entry_fill_ts = ts
        total = state.entry_shares + size
        if total > ZERO:
            previous = state.entry_avg if state.entry_avg is not None else price
            state.entry_avg = (previous * state.entry_shares + price * size) / total
        state.entry_shares = total

    def _transition(self, state: MarketState, to: Phase, reason: str, ts: float) -> bool:
        if to not in _TRANSITIONS[state.phase]:
            logger.error(
                "Illegal transition %s -> %s on %s (%s)",
                state.phase.value,
                to.value,
                state.market_id,
                reason,
            )
            return False
        self._emit(
            StateChangeEvent(
                market_id=state.market_id,
                asset=state.asset,
                ts=ts,
                from_phase=state.phase.value,
                to_phase=to.value,
                reason=reason,
            )
        )
        logger.info(
            "%s/%s: %s -> %s (%s)", state.asset, state.market_id, state.phase.value, to.value, reason
        )
        state.phase = to
        return True

    def _update_kill_switch(self, fill: Fill) -> None:
        kill = self._kill
        ks_cfg = self._config.kill_switch
        if fill.fee_usd is None:
            kill.missing_fee_fills += 1
            if ks_cfg.require_fee_usd:
                self._trip(KillSwitchReason.MISSING_FEE_USD, f"order {fill.order_id}")
        if fill.liquidity is Liquidity.UNKNOWN:
            return
        is_maker = fill.liquidity is Liquidity.MAKER
        if is_maker:
            kill.maker_fills += 1
        else:
            kill.taker_fills += 1
        self._liquidity_window.append(is_maker)
        window = self._liquidity_window
        if len(window) >= ks_cfg.maker_ratio_window:
            ratio = Decimal(sum(window)) / Decimal(len(window))
            if ratio < ks_cfg.min_maker_fill_ratio:
                self._trip(KillSwitchReason.MAKER_RATIO_TOO_LOW, f"ratio={ratio:.2f}")

    def _trip(self, reason: KillSwitchReason, details: str) -> None:
        kill = self._kill
        if kill.entries_disabled:
            return
        kill.entries_disabled = True
        kill.reason = reason.value
        kill.disabled_at = self._clock()
        logger.error("Kill switch tripped: %s (%s); new entries disabled", reason.value, details)
        self._emit(
            KillSwitchEvent(
                ts=kill.disabled_at,
                reason=reason,
                details=details,
                maker_fills=kill.maker_fills,
                taker_fills=kill.taker_fills,
                missing_fee_fills=kill.missing_fee_fills,
            )
        )

    # -- audit helpers ----------------------------------------------------

    def _skip(
        self, tick: MarketTick, intent: Intent, reason: SkipReason, details: str = ""
    ) -> None:
        self._stats[f"skip_{reason.value}"] += 1
        logger.debug(
            "%s/%s skip %s %s %s", tick.asset, tick.market_id, intent.value, reason.value, details
        )
        self._emit(
            SkipEvent(
                market_id=tick.market_id,
                asset=tick.asset,
                ts=tick.ts,
                intent=intent,
                reason=reason,
                details=details,
            )
        )

    def _emit_eval(
        self,
        tick: MarketTick,
        fair_up: Decimal | None,
        edge_up: Decimal | None,
        edge_down: Decimal | None,
        chosen: TokenSide | None,
    ) -> None:
        self._emit(
            EvalEvent(
                market_id=tick.market_id,
                asset=tick.asset,
                ts=tick.ts,
                sec_remaining=tick.sec_remaining,
                fair_up=fair_up,
                fair_trusted=fair_up is not None,
                edge_up=edge_up,
                edge_down=edge_down,
                chosen=chosen,
            )
        )

    def _emit(self, event: object) -> None:
        if self._audit is not None:
            self._audit.emit(event)
