"""In-memory exposure ledger keyed by (market, asset).

The ledger is the single source of truth for how many shares the engine
has committed per market side.  Each side tracks three counters:

* ``position``: confirmed holdings,
* ``open``: shares resting on the book,
* ``pending``: shares requested but not yet acknowledged.

Every logical order walks the lifecycle A → B → (C | D):

A. ``reserve_pending`` before the exchange call,
B. ``promote_to_open`` once the exchange acknowledges,
C. ``on_fill`` subtracts from ``open`` (callers book the position),
D. ``on_cancel_open`` / ``on_reject_pending`` release the shares.

Because step A happens before the network call, a cap check made while
the call is still in flight already sees the reservation.  That is what
keeps caps safe under concurrent orders on the same market side.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any

from updown_engine.apps.trader.config import LedgerConfig
from updown_engine.apps.trader.events import LedgerAttemptEvent, LedgerBreachEvent
from updown_engine.apps.trader.models import (
    AttemptDecision,
    CapCheckResult,
    EffectiveExposure,
    InvariantCheckResult,
    LedgerEntry,
)
from updown_engine.apps.trader.protocols import AuditSink
from updown_engine.core.models import ZERO, TokenSide

logger = logging.getLogger(__name__)

_Key = tuple[str, str]


def _to_qty(value: Any) -> Decimal | None:
    """Coerce a quantity to Decimal, returning None if it is not finite."""
    try:
        qty = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return qty if qty.is_finite() else None


def _positive(value: Any) -> Decimal | None:
    """Return the quantity if finite and strictly positive, else None."""
    qty = _to_qty(value)
    return qty if qty is not None and qty > ZERO else None


class ExposureLedger:
    """Per-market, per-side share bookkeeping with cap checks.

    Construct one instance at startup and pass it to every consumer.

    Args:
        config: Per-side and per-market caps.
        audit: Optional sink for attempt and breach events.
        clock: Wall-clock source stamped on entries and events.

    """

    def __init__(
        self,
        config: LedgerConfig | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty ledger.

        Args:
            config: Per-side and per-market caps.
            audit: Optional sink for attempt and breach events.
            clock: Wall-clock source.

        """
        self._config = config or LedgerConfig()
        self._audit = audit
        self._clock = clock
        self._entries: dict[_Key, LedgerEntry] = {}

    @property
    def config(self) -> LedgerConfig:
        """Return the caps this ledger enforces."""
        return self._config

    def _entry(self, market_id: str, asset: str) -> LedgerEntry:
        """Return the entry for a key, creating it on first reference."""
        key = (market_id, asset)
        entry = self._entries.get(key)
        if entry is None:
            entry = LedgerEntry(market_id=market_id, asset=asset, last_updated=self._clock())
            self._entries[key] = entry
        return entry

    def _adjust(self, market_id: str, asset: str, field: str, delta: Decimal) -> LedgerEntry:
        """Add ``delta`` to one counter, clamping the result at zero."""
        entry = self._entry(market_id, asset)
        current: Decimal = getattr(entry, field)
        setattr(entry, field, max(ZERO, current + delta))
        entry.last_updated = self._clock()
        return entry

    @staticmethod
    def _field(prefix: str, side: TokenSide) -> str:
        return f"{prefix}_{side.value.lower()}"

    def reserve_pending(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Step A: add requested shares to ``pending`` before the exchange call."""
        amount = _positive(qty)
        if amount is None:
            return
        self._adjust(market_id, asset, self._field("pending", side), amount)

    def promote_to_open(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Step B: move acknowledged shares from ``pending`` to ``open``.

        Only the quantity actually pending is moved, so a late or
        duplicated acknowledgement cannot create resting shares out of
        nothing.
        """
        amount = _positive(qty)
        if amount is None:
            return
        entry = self._entry(market_id, asset)
        pending_field = self._field("pending", side)
        moved = min(amount, getattr(entry, pending_field))
        if moved <= ZERO:
            return
        self._adjust(market_id, asset, pending_field, -moved)
        self._adjust(market_id, asset, self._field("open", side), moved)

    def on_fill(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Step C: subtract filled shares from ``open``."""
        amount = _positive(qty)
        if amount is None:
            return
        self._adjust(market_id, asset, self._field("open", side), -amount)

    def on_cancel_open(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Step D: subtract cancelled or expired shares from ``open``."""
        amount = _positive(qty)
        if amount is None:
            return
        self._adjust(market_id, asset, self._field("open", side), -amount)

    def on_reject_pending(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Step D: subtract rejected shares from ``pending``."""
        amount = _positive(qty)
        if amount is None:
            return
        self._adjust(market_id, asset, self._field("pending", side), -amount)

    def sync_position(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Overwrite the confirmed position with an exchange-reported value.

        Zero is accepted; negative and non-finite values are ignored.
        """
        amount = _to_qty(qty)
        if amount is None or amount < ZERO:
            return
        entry = self._entry(market_id, asset)
        setattr(entry, self._field("position", side), amount)
        entry.last_updated = self._clock()

    def increment_position(self, market_id: str, asset: str, side: TokenSide, qty: Any) -> None:
        """Add filled shares to the confirmed position."""
        amount = _positive(qty)
        if amount is None:
            return
        self._adjust(market_id, asset, self._field("position", side), amount)

    def clear_market(self, market_id: str, asset: str) -> None:
        """Drop the entry for a retired market."""
        if self._entries.pop((market_id, asset), None) is not None:
            logger.debug("Ledger cleared for %s/%s", asset, market_id)

    def get_entry(self, market_id: str, asset: str) -> LedgerEntry | None:
        """Return a copy of the entry, or None if the market is untracked."""
        entry = self._entries.get((market_id, asset))
        return replace(entry) if entry is not None else None

    def get_effective_exposure(self, market_id: str, asset: str) -> EffectiveExposure:
        """Return the position/open/pending snapshot for both sides."""
        entry = self._entries.get((market_id, asset))
        if entry is None:
            return EffectiveExposure()
        return EffectiveExposure(
            position_up=entry.position_up,
            open_up=entry.open_up,
            pending_up=entry.pending_up,
            position_down=entry.position_down,
            open_down=entry.open_down,
            pending_down=entry.pending_down,
        )

    def check_cap_with_effective_exposure(
        self, market_id: str, asset: str, side: TokenSide, qty: Any
    ) -> CapCheckResult:
        """Answer whether ``qty`` more shares fit under the per-side cap.

        Never mutates the ledger: a ``reserve_pending`` call must follow
        if the caller proceeds.

        Args:
            market_id: Market identifier.
            asset: Underlying asset symbol.
            side: Side the order would add to.
            qty: Requested quantity.

        Returns:
            Blocked when no headroom remains, otherwise the request
            clamped to the remaining headroom.

        """
        exposure = self.get_effective_exposure(market_id, asset)
        cap = self._config.max_shares_per_side
        remaining = cap - exposure.effective(side)
        requested = _positive(qty) or ZERO
        if remaining <= ZERO or requested <= ZERO:
            return CapCheckResult(
                allowed=False,
                blocked=remaining <= ZERO,
                requested_qty=requested,
                clamped_qty=ZERO,
                remaining=remaining,
                cap=cap,
                side=side,
                exposure=exposure,
            )
        return CapCheckResult(
            allowed=True,
            blocked=False,
            requested_qty=requested,
            clamped_qty=min(requested, remaining),
            remaining=remaining,
            cap=cap,
            side=side,
            exposure=exposure,
        )

    def log_order_attempt(self, market_id: str, asset: str, check: CapCheckResult) -> None:
        """Record the place/clamp/block decision derived from a cap check."""
        if check.blocked or not check.allowed:
            decision = AttemptDecision.BLOCK
        elif check.clamped:
            decision = AttemptDecision.CLAMP
        else:
            decision = AttemptDecision.PLACE
        logger.info(
            "Ledger %s %s/%s %s: requested=%s clamped=%s effective=%s cap=%s",
            decision.value,
            asset,
            market_id,
            check.side.value,
            check.requested_qty,
            check.clamped_qty,
            check.exposure.effective(check.side),
            check.cap,
        )
        if self._audit is not None:
            self._audit.emit(
                LedgerAttemptEvent(
                    market_id=market_id,
                    asset=asset,
                    ts=self._clock(),
                    side=check.side,
                    decision=decision.value,
                    requested_qty=check.requested_qty,
                    clamped_qty=check.clamped_qty,
                    effective_before=check.exposure.effective(check.side),
                    cap=check.cap,
                )
            )

    def assert_invariants(self, market_id: str, asset: str) -> InvariantCheckResult:
        """Recompute exposure and report every cap breach.

        A detector, not a preventer: the entry is never corrected.  A
        breach means a caller mutated the ledger out of lifecycle order.

        Args:
            market_id: Market identifier.
            asset: Underlying asset symbol.

        Returns:
            Validity flag with one violation line per breached cap.

        """
        exposure = self.get_effective_exposure(market_id, asset)
        per_side = self._config.max_shares_per_side
        total_cap = self._config.max_total_shares_per_market
        violations: list[str] = []
        if exposure.effective_up > per_side:
            violations.append(f"UP effective {exposure.effective_up} > cap {per_side}")
        if exposure.effective_down > per_side:
            violations.append(f"DOWN effective {exposure.effective_down} > cap {per_side}")
        if exposure.total > total_cap:
            violations.append(f"market total {exposure.total} > cap {total_cap}")

        if violations:
            logger.error(
                "LEDGER_INVARIANT_BREACH %s/%s: %s", asset, market_id, "; ".join(violations)
            )
            if self._audit is not None:
                self._audit.emit(
                    LedgerBreachEvent(
                        market_id=market_id,
                        asset=asset,
                        ts=self._clock(),
                        violations=tuple(violations),
                        effective_up=exposure.effective_up,
                        effective_down=exposure.effective_down,
                    )
                )
        return InvariantCheckResult(
            valid=not violations,
            violations=tuple(violations),
            entry=self.get_entry(market_id, asset),
            exposure=exposure,
        )

    def markets(self) -> list[tuple[str, str]]:
        """Return the (market, asset) keys currently tracked."""
        return list(self._entries)
