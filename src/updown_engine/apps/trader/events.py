"""Typed audit events emitted by the ledger, execution client and strategy.

Every event is a frozen dataclass carrying an ``event_type`` class
constant.  The audit emitter routes order attempts to their own table and
stores everything else as a JSON payload keyed by ``event_type``.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import ClassVar

from updown_engine.core.models import Intent, Side, TokenSide


class SkipReason(Enum):
    """Why an entry or hedge evaluation did not submit an order."""

    KILL_SWITCH_ACTIVE = "KILL_SWITCH_ACTIVE"
    TOO_LATE = "TOO_LATE"
    TOO_EARLY = "TOO_EARLY"
    FAIR_NOT_TRUSTED = "FAIR_NOT_TRUSTED"
    NO_EDGE = "NO_EDGE"
    POSITION_EXISTS = "POSITION_EXISTS"
    MAX_CONCURRENT_MARKETS = "MAX_CONCURRENT_MARKETS"
    ORDER_IN_FLIGHT = "ORDER_IN_FLIGHT"
    SPREAD_TOO_WIDE = "SPREAD_TOO_WIDE"
    DEPTH_TOO_LOW = "DEPTH_TOO_LOW"
    HEDGE_TOO_EXPENSIVE = "HEDGE_TOO_EXPENSIVE"
    CPP_TOO_HIGH = "CPP_TOO_HIGH"
    PRICE_REJECTED = "PRICE_REJECTED"
    CAP_BLOCKED = "CAP_BLOCKED"
    ORDER_FAILED = "ORDER_FAILED"


class KillSwitchReason(Enum):
    """Why the kill switch tripped."""

    MISSING_FEE_USD = "MISSING_FEE_USD"
    MAKER_RATIO_TOO_LOW = "MAKER_RATIO_TOO_LOW"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class EvalEvent:
    """One entry evaluation with the edges that drove it."""

    event_type: ClassVar[str] = "EVAL"

    market_id: str
    asset: str
    ts: float
    sec_remaining: float
    fair_up: Decimal | None
    fair_trusted: bool
    edge_up: Decimal | None
    edge_down: Decimal | None
    chosen: TokenSide | None


@dataclass(frozen=True)
class OrderEvent:
    """An order the strategy decided to submit."""

    event_type: ClassVar[str] = "ORDER"

    market_id: str
    asset: str
    ts: float
    intent: Intent
    token: TokenSide
    size: Decimal
    best_bid: Decimal
    best_ask: Decimal
    price: Decimal
    order_id: str | None
    success: bool


@dataclass(frozen=True)
class CorrectionEvent:
    """A detected correction that triggers a hedge attempt."""

    event_type: ClassVar[str] = "CORRECTION"

    market_id: str
    asset: str
    ts: float
    entry_token: TokenSide
    edge_now: Decimal
    unrealized_usd: Decimal
    sec_since_fill: float


@dataclass(frozen=True)
class SkipEvent:
    """An evaluation that ended without an order."""

    event_type: ClassVar[str] = "SKIP"

    market_id: str
    asset: str
    ts: float
    intent: Intent
    reason: SkipReason
    details: str = ""


@dataclass(frozen=True)
class StateChangeEvent:
    """A market moved between lifecycle phases."""

    event_type: ClassVar[str] = "STATE_CHANGE"

    market_id: str
    asset: str
    ts: float
    from_phase: str
    to_phase: str
    reason: str


@dataclass(frozen=True)
class FillEvent:
    """A fill applied to the strategy."""

    event_type: ClassVar[str] = "FILL"

    market_id: str
    asset: str
    ts: float
    order_id: str
    intent: Intent | None
    token: TokenSide
    price: Decimal
    size: Decimal
    fee_usd: Decimal | None
    liquidity: str


@dataclass(frozen=True)
class KillSwitchEvent:
    """The kill switch tripped."""

    event_type: ClassVar[str] = "KILL_SWITCH"

    ts: float
    reason: KillSwitchReason
    details: str
    maker_fills: int
    taker_fills: int
    missing_fee_fills: int


@dataclass(frozen=True)
class LedgerAttemptEvent:
    """Cap-check decision taken before an order request."""

    event_type: ClassVar[str] = "LEDGER_ORDER_ATTEMPT"

    market_id: str
    asset: str
    ts: float
    side: TokenSide
    decision: str
    requested_qty: Decimal
    clamped_qty: Decimal
    effective_before: Decimal
    cap: Decimal


@dataclass(frozen=True)
class LedgerBreachEvent:
    """Recomputed exposure exceeded a cap."""

    event_type: ClassVar[str] = "LEDGER_INVARIANT_BREACH"

    market_id: str
    asset: str
    ts: float
    violations: tuple[str, ...]
    effective_up: Decimal
    effective_down: Decimal


@dataclass(frozen=True)
class OrderAttemptEvent:
    """One call to the exchange order endpoint and its outcome."""

    event_type: ClassVar[str] = "ORDER_ATTEMPT"

    ts: float
    token_id: str
    side: Side
    price: Decimal
    size: Decimal
    order_type: str
    success: bool
    order_id: str | None
    fill_status: str
    failure_reason: str | None
    error: str
