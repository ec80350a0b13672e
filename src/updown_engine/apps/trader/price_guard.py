"""Book-based maker price validator.

Price a maker order one tick inside the spread and never at or through
the opposite best price, so the order rests instead of taking liquidity.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from updown_engine.apps.trader.models import PriceDecision, TokenBook
from updown_engine.core.models import ONE, ZERO, Side


def round_to_tick(price: Decimal, tick: Decimal, *, up: bool = False) -> Decimal:
    """Round a price to a multiple of ``tick``.

    Args:
        price: Raw price.
        tick: Price increment.
        up: Round toward +inf instead of toward -inf.

    Returns:
        Price quantized to the tick grid.

    """
    steps = (price / tick).to_integral_value(rounding=ROUND_CEILING if up else ROUND_FLOOR)
    return (steps * tick).quantize(tick)


class BookPriceGuard:
    """Default ``MakerPriceValidator`` driven purely by the top of book.

    Args:
        tick: Price increment.
        max_book_age_ms: Books older than this are rejected as stale.

    """

    def __init__(self, tick: Decimal = Decimal("0.01"), max_book_age_ms: int = 3000) -> None:
        """Initialize the guard."""
        self._tick = tick
        self._max_book_age_ms = max_book_age_ms

    def is_book_valid(self, book: TokenBook) -> bool:
        """Return True for a finite, non-empty, uncrossed book inside (0, 1]."""
        bid, ask = book.best_bid, book.best_ask
        if not (bid.is_finite() and ask.is_finite()):
            return False
        return ZERO < bid < ask <= ONE

    def is_book_fresh(self, book: TokenBook) -> bool:
        """Return True when the book is no older than the configured limit."""
        return 0 <= book.age_ms <= self._max_book_age_ms

    def maker_price(self, side: Side, book: TokenBook) -> PriceDecision:
        """Price one tick inside the spread without crossing it.

        Args:
            side: Order direction.
            book: Top of book of the token being traded.

        Returns:
            Accepted tick-rounded price or a rejection code: ``RAW_NAN``,
            ``INVALID_BOOK``, ``STALE_BOOK``, ``NO_CROSSING_BUY`` or
            ``NO_CROSSING_SELL``.

        """
        if not (book.best_bid.is_finite() and book.best_ask.is_finite()):
            return PriceDecision(ok=False, reason="RAW_NAN")
        if not self.is_book_valid(book):
            return PriceDecision(ok=False, reason="INVALID_BOOK")
        if not self.is_book_fresh(book):
            return PriceDecision(ok=False, reason="STALE_BOOK")

        tick = self._tick
        if side is Side.BUY:
            price = min(round_to_tick(book.best_bid + tick, tick), book.best_ask - tick)
            if price < tick:
                return PriceDecision(ok=False, reason="NO_CROSSING_BUY")
            return PriceDecision(ok=True, price=price)

        price = max(round_to_tick(book.best_ask - tick, tick, up=True), book.best_bid + tick)
        if price > ONE - tick:
            return PriceDecision(ok=False, reason="NO_CROSSING_SELL")
        return PriceDecision(ok=True, price=price)
