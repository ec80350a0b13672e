"""Single-outstanding-order tracking per (market, token, intent).

A slot is claimed synchronously with the trading decision, before the
exchange call, so a second evaluation of the same market cannot submit a
duplicate while the first call is still in flight.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from updown_engine.core.models import ZERO, Intent, TokenSide

OrderKey = tuple[str, TokenSide, Intent]


@dataclass
class InFlightOrder:
    """An order slot claimed for one (market, token, intent).

    Attributes:
        market_id: Market identifier.
        asset: Underlying asset symbol.
        token: Outcome side.
        intent: Entry or hedge.
        size: Shares submitted.
        created_at: Epoch seconds when the slot was claimed.
        order_id: Exchange id once acknowledged.
        filled: Shares filled so far.

    """

    market_id: str
    asset: str
    token: TokenSide
    intent: Intent
    size: Decimal
    created_at: float
    order_id: str | None = None
    filled: Decimal = ZERO

    @property
    def key(self) -> OrderKey:
        """Return the tracking key."""
        return (self.market_id, self.token, self.intent)


class OrderTracker:
    """Registry of claimed order slots.

    Args:
        clock: Wall-clock source used for staleness.

    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize an empty tracker."""
        self._clock = clock
        self._by_key: dict[OrderKey, InFlightOrder] = {}
        self._by_order_id: dict[str, OrderKey] = {}

    def has(self, market_id: str, token: TokenSide, intent: Intent) -> bool:
        """Return True if a slot is held for this key."""
        return (market_id, token, intent) in self._by_key

    def begin(
        self, market_id: str, asset: str, token: TokenSide, intent: Intent, size: Decimal
    ) -> bool:
        """Claim a slot; return False if one is already held."""
        key = (market_id, token, intent)
        if key in self._by_key:
            return False
        self._by_key[key] = InFlightOrder(
            market_id=market_id,
            asset=asset,
            token=token,
            intent=intent,
            size=size,
            created_at=self._clock(),
        )
        return True

    def confirm(self, market_id: str, token: TokenSide, intent: Intent, order_id: str) -> None:
        """Attach the exchange order id to a held slot."""
        order = self._by_key.get((market_id, token, intent))
        if order is None:
            return
        order.order_id = order_id
        self._by_order_id[order_id] = order.key

    def release(self, market_id: str, token: TokenSide, intent: Intent) -> InFlightOrder | None:
        """Free a slot, returning the order it held."""
        order = self._by_key.pop((market_id, token, intent), None)
        if order is not None and order.order_id:
            self._by_order_id.pop(order.order_id, None)
        return order

    def lookup(self, order_id: str) -> InFlightOrder | None:
        """Return the slot holding an exchange order id."""
        key = self._by_order_id.get(order_id)
        return self._by_key.get(key) if key is not None else None

    def record_fill(self, order_id: str, size: Decimal) -> InFlightOrder | None:
        """Add filled shares to an order; free its slot once fully filled.

        Returns:
            The tracked order, or None when the id is unknown.

        """
        order = self.lookup(order_id)
        if order is None:
            return None
        order.filled += size
        if order.filled >= order.size:
            self.release(*order.key)
        return order

    def find_stale(self, timeout_seconds: float) -> list[InFlightOrder]:
        """Return every slot older than ``timeout_seconds``, oldest first.

        Slots stay held; the caller releases each one once its order is
        known to be off the book.
        """
        cutoff = self._clock() - timeout_seconds
        stale = [o for o in self._by_key.values() if o.created_at < cutoff]
        return sorted(stale, key=lambda o: o.created_at)

    def clear_market(self, market_id: str) -> None:
        """Free every slot belonging to a market."""
        for key in [k for k in self._by_key if k[0] == market_id]:
            self.release(*key)

    def __len__(self) -> int:
        """Return the number of held slots."""
        return len(self._by_key)
