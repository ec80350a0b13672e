"""Core value types shared across the up/down trading engine.

Define the decimal constants and the small enumerations (order side,
outcome token side, order intent) used by the exchange client, the
exposure ledger, the strategy, and the redemption engine.
"""

from decimal import Decimal
from enum import Enum

ZERO = Decimal(0)
ONE = Decimal(1)


class Side(Enum):
    """Direction of an order: BUY or SELL."""

    BUY = "BUY"
    SELL = "SELL"


class TokenSide(Enum):
    """Outcome token of a binary Up/Down market."""

    UP = "UP"
    DOWN = "DOWN"

    @property
    def opposite(self) -> "TokenSide":
        """Return the other outcome of the same market."""
        return TokenSide.DOWN if self is TokenSide.UP else TokenSide.UP


class Intent(Enum):
    """Purpose of an order placed by the strategy."""

    ENTRY = "ENTRY"
    HEDGE = "HEDGE"
