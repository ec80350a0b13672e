"""Typed data models for Polymarket exchange and chain data.

Provide frozen dataclasses that insulate the rest of the codebase from the
untyped dictionaries returned by ``py-clob-client``, the Data API, and
web3 receipts.  All monetary values use ``Decimal`` for precision.
"""

from dataclasses import dataclass
from decimal import Decimal

from updown_engine.core.models import ZERO


@dataclass(frozen=True)
class OrderLevel:
    """Single price level in an order book.

    Args:
        price: Price of the level as a decimal between 0 and 1.
        size: Available quantity at this price level.

    """

    price: Decimal
    size: Decimal


@dataclass(frozen=True)
class OrderBook:
    """Typed order book snapshot for a Polymarket token.

    Contain the full bid/ask ladder along with computed spread and midpoint.

    Args:
        token_id: CLOB token identifier for the market outcome.
        bids: Price levels on the buy side, ordered best-to-worst.
        asks: Price levels on the sell side, ordered best-to-worst.
        spread: Difference between best ask and best bid.
        midpoint: Average of best bid and best ask prices.

    """

    token_id: str
    bids: tuple[OrderLevel, ...]
    asks: tuple[OrderLevel, ...]
    spread: Decimal
    midpoint: Decimal

    @property
    def best_bid(self) -> Decimal | None:
        """Return the highest bid price, or None for an empty bid side."""
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Decimal | None:
        """Return the lowest ask price, or None for an empty ask side."""
        return self.asks[0].price if self.asks else None

    @property
    def bid_depth(self) -> Decimal:
        """Return the total size resting on the bid side."""
        return sum((level.size for level in self.bids), ZERO)

    @property
    def ask_depth(self) -> Decimal:
        """Return the total size resting on the ask side."""
        return sum((level.size for level in self.asks), ZERO)


@dataclass(frozen=True)
class OrderRequest:
    """Typed input for placing an order on Polymarket.

    Args:
        token_id: CLOB token identifier for the outcome to trade.
        side: Order side -- ``"BUY"`` or ``"SELL"``.
        price: Limit price between 0 and 1.
        size: Number of shares to trade.
        order_type: ``"GTC"``, ``"GTD"`` or ``"FOK"``.

    """

    token_id: str
    side: str
    price: Decimal
    size: Decimal
    order_type: str = "GTC"


@dataclass(frozen=True)
class PlacedOrder:
    """Canonical result of a successful order submission.

    The CLOB answers ``post_order`` with inconsistently keyed payloads
    (``orderID`` / ``id``, ``success`` / ``errorMsg``); they are collapsed
    into this shape once, at the client boundary.

    Args:
        order_id: Identifier assigned by the CLOB (empty if none returned).
        status: Raw status string (e.g. ``"live"``, ``"matched"``).
        accepted: Whether the exchange reported success.
        error: Exchange error text when not accepted.

    """

    order_id: str
    status: str
    accepted: bool
    error: str = ""


@dataclass(frozen=True)
class OrderStatus:
    """Normalised status of an existing order.

    Args:
        order_id: Order identifier.
        status: Lower-cased exchange status (``"live"``, ``"matched"``, ...).
        original_size: Size submitted.
        size_matched: Size filled so far.
        price: Limit price.

    """

    order_id: str
    status: str
    original_size: Decimal
    size_matched: Decimal
    price: Decimal


@dataclass(frozen=True)
class Balance:
    """Typed balance and allowance information for a Polymarket asset.

    Args:
        asset_type: ``"COLLATERAL"`` for USDC or ``"CONDITIONAL"`` for tokens.
        balance: Current balance in the asset's native units.
        allowance: Approved spending allowance for the exchange contract.

    """

    asset_type: str
    balance: Decimal
    allowance: Decimal


@dataclass(frozen=True)
class Position:
    """A position reported by the Polymarket Data API positions feed.

    Args:
        condition_id: Market condition identifier (settlement key).
        token_id: CLOB token identifier (the ``asset`` field).
        outcome: Outcome label (e.g. ``"Up"``, ``"Down"``).
        outcome_index: Zero-based outcome index within the market.
        size: Number of tokens held.
        current_value: Current USD value of the position.
        redeemable: Whether the market has resolved and the position can be redeemed.
        title: Human-readable market title.
        wallet: Wallet address the position belongs to.

    """

    condition_id: str
    token_id: str
    outcome: str
    outcome_index: int
    size: Decimal
    current_value: Decimal
    redeemable: bool
    title: str
    wallet: str


@dataclass(frozen=True)
class GasQuote:
    """Worst-case gas cost for a redemption compared with the signer balance.

    Args:
        max_fee_per_gas: Fee cap per gas unit in wei.
        gas_limit: Gas units reserved for the transaction.
        balance_wei: Native-token balance of the signer in wei.

    """

    max_fee_per_gas: int
    gas_limit: int
    balance_wei: int

    @property
    def worst_case_cost(self) -> int:
        """Return the maximum wei the transaction can consume."""
        return self.max_fee_per_gas * self.gas_limit

    @property
    def affordable(self) -> bool:
        """Return True when the balance covers the worst-case cost."""
        return self.balance_wei >= self.worst_case_cost


@dataclass(frozen=True)
class PayoutEvent:
    """A ``PayoutRedemption`` event decoded from a CTF receipt log.

    Args:
        redeemer: Address that received the payout.
        condition_id: Settled condition identifier (``0x`` hex).
        index_sets: Outcome index sets redeemed.
        payout: Collateral paid out, in USDC.

    """

    redeemer: str
    condition_id: str
    index_sets: tuple[int, ...]
    payout: Decimal


@dataclass(frozen=True)
class RedemptionReceipt:
    """Outcome of a mined redemption transaction.

    Args:
        tx_hash: Transaction hash (``0x`` hex).
        status: Receipt status (1 success, 0 reverted).
        block_number: Block the transaction was mined in.
        gas_used: Gas consumed.
        effective_gas_price: Gas price paid in wei.
        payouts: Decoded payout events emitted by the CTF contract.

    """

    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int
    payouts: tuple[PayoutEvent, ...]

    @property
    def total_payout(self) -> Decimal:
        """Return the summed payout across all decoded events."""
        return sum((event.payout for event in self.payouts), ZERO)
