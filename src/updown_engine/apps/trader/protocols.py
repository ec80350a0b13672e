"""Protocols for the engine's external collaborators.

The fair-price model and maker-price validator are consulted as pure
functions of current state.  The audit sink receives every structured
event and must return without blocking.
"""

from decimal import Decimal
from typing import Protocol, runtime_checkable

from updown_engine.apps.trader.models import FairEstimate, PriceDecision, TokenBook
from updown_engine.core.models import Side


@runtime_checkable
class FairPriceModel(Protocol):
    """Learned fair probability per (asset, mispricing bucket, time bucket)."""

    def lookup(self, asset: str, delta: Decimal, sec_remaining: float) -> FairEstimate | None:
        """Return the fair UP probability for the current cell.

        Args:
            asset: Underlying asset symbol.
            delta: Spot minus strike in USD.
            sec_remaining: Seconds until the market closes.

        Returns:
            Estimate for the matching cell, or ``None`` if the model has no
            cell for these inputs.

        """
        ...


@runtime_checkable
class MakerPriceValidator(Protocol):
    """Compute and validate spread-non-crossing maker prices."""

    def is_book_valid(self, book: TokenBook) -> bool:
        """Return True when the book has a sane, uncrossed top of book."""
        ...

    def is_book_fresh(self, book: TokenBook) -> bool:
        """Return True when the book is recent enough to trade against."""
        ...

    def maker_price(self, side: Side, book: TokenBook) -> PriceDecision:
        """Return a tick-rounded price that rests without crossing the spread.

        Args:
            side: Order direction.
            book: Current book of the token being traded.

        Returns:
            Decision with the price, or the rejection code.

        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Best-effort receiver of structured events."""

    def emit(self, event: object) -> None:
        """Accept an event without blocking the caller."""
        ...
