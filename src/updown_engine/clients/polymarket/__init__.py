"""Polymarket exchange and settlement client."""

from updown_engine.clients.polymarket.client import PolymarketClient
from updown_engine.clients.polymarket.exceptions import (
    BlockchainError,
    PolymarketAPIError,
    PolymarketError,
)
from updown_engine.clients.polymarket.models import (
    OrderBook,
    OrderLevel,
    OrderRequest,
    OrderStatus,
    PlacedOrder,
    Position,
)

__all__ = [
    "BlockchainError",
    "OrderBook",
    "OrderLevel",
    "OrderRequest",
    "OrderStatus",
    "PlacedOrder",
    "PolymarketAPIError",
    "PolymarketClient",
    "PolymarketError",
    "Position",
]
