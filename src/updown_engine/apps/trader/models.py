"""Value objects for the decision-and-execution engine.

Define the exposure bookkeeping records, the canonical order result
returned by the execution client, the per-market strategy state, the
process-wide kill-switch state, and the typed inputs (market ticks,
fills, retirements) published onto the runner's channel.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from updown_engine.core.models import ZERO, Intent, TokenSide

_TWO = Decimal(2)


@dataclass
class LedgerEntry:
    """Share counters for one (market, asset) pair.

    Attributes:
        market_id: Market identifier.
        asset: Underlying asset symbol (e.g. ``"BTC"``).
        position_up: Confirmed UP holdings.
        position_down: Confirmed DOWN holdings.
        open_up: UP shares resting on the book.
        open_down: DOWN shares resting on the book.
        pending_up: UP shares requested but not yet acknowledged.
        pending_down: DOWN shares requested but not yet acknowledged.
        last_updated: Epoch seconds of the last mutation.

    """

    market_id: str
    asset: str
    position_up: Decimal = ZERO
    position_down: Decimal = ZERO
    open_up: Decimal = ZERO
    open_down: Decimal = ZERO
    pending_up: Decimal = ZERO
    pending_down: Decimal = ZERO
    last_updated: float = 0.0


@dataclass(frozen=True)
class EffectiveExposure:
    """Snapshot of position + open + pending per side.

    Attributes:
        position_up: Confirmed UP holdings.
        open_up: Resting UP shares.
        pending_up: Unacknowledged UP shares.
        position_down: Confirmed DOWN holdings.
        open_down: Resting DOWN shares.
        pending_down: Unacknowledged DOWN shares.

    """

    position_up: Decimal = ZERO
    open_up: Decimal = ZERO
    pending_up: Decimal = ZERO
    position_down: Decimal = ZERO
    open_down: Decimal = ZERO
    pending_down: Decimal = ZERO

    @property
    def effective_up(self) -> Decimal:
        """Return UP position + open + pending."""
        return self.position_up + self.open_up + self.pending_up

    @property
    def effective_down(self) -> Decimal:
        """Return DOWN position + open + pending."""
        return self.position_down + self.open_down + self.pending_down

    @property
    def total(self) -> Decimal:
        """Return effective exposure summed over both sides."""
        return self.effective_up + self.effective_down

    def effective(self, side: TokenSide) -> Decimal:
        """Return the effective exposure for one side."""
        return self.effective_up if side is TokenSide.UP else self.effective_down


@dataclass(frozen=True)
class CapCheckResult:
    """Side-effect-free answer to "may I add this many shares?".

    Attributes:
        allowed: True when at least some quantity fits under the cap.
        blocked: True when no headroom remains.
        requested_qty: Quantity asked for.
        clamped_qty: Quantity that fits (``0`` when blocked).
        remaining: Headroom before the request (``cap - effective``).
        cap: Per-side cap applied.
        side: Side checked.
        exposure: Exposure snapshot the decision was based on.

    """

    allowed: bool
    blocked: bool
    requested_qty: Decimal
    clamped_qty: Decimal
    remaining: Decimal
    cap: Decimal
    side: TokenSide
    exposure: EffectiveExposure

    @property
    def clamped(self) -> bool:
        """Return True when the request was reduced to fit."""
        return self.allowed and self.clamped_qty < self.requested_qty


@dataclass(frozen=True)
class InvariantCheckResult:
    """Result of recomputing a ledger entry against its caps.

    Attributes:
        valid: True when no cap is exceeded.
        violations: Human-readable description of every breach.
        entry: Copy of the ledger entry inspected (None if absent).
        exposure: Exposure snapshot used.

    """

    valid: bool
    violations: tuple[str, ...]
    entry: LedgerEntry | None
    exposure: EffectiveExposure


class AttemptDecision(Enum):
    """How a pre-order cap check resolved."""

    PLACE = "place"
    CLAMP = "clamp"
    BLOCK = "block"


class FailureReason(Enum):
    """Closed set of reasons an order placement can fail."""

    NO_LIQUIDITY = "no_liquidity"
    CLOUDFLARE = "cloudflare"
    AUTH = "auth"
    BALANCE = "balance"
    NO_ORDERBOOK = "no_orderbook"
    UNKNOWN = "unknown"


class FillStatus(Enum):
    """Post-submit verification outcome of a placed order."""

    FILLED = "filled"
    PARTIAL = "partial"
    OPEN = "open"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class OrderResult:
    """Canonical outcome of ``OrderExecutionClient.place_order``.

    Attributes:
        success: True when the exchange accepted the order.
        order_id: Exchange order identifier when accepted.
        fill_status: Verification outcome (``unknown`` on failure).
        failure_reason: Why the placement failed, when it did.
        price: Price actually submitted (after improvement).
        size: Size submitted.
        filled_size: Matched size reported by verification.
        error: Diagnostic text for failures.

    """

    success: bool
    order_id: str | None = None
    fill_status: FillStatus = FillStatus.UNKNOWN
    failure_reason: FailureReason | None = None
    price: Decimal | None = None
    size: Decimal | None = None
    filled_size: Decimal = ZERO
    error: str = ""


class Phase(Enum):
    """Lifecycle phase of one market in the strategy."""

    IDLE = "IDLE"
    HAS_ENTRY = "HAS_ENTRY"
    HEDGE_IN_PROGRESS = "HEDGE_IN_PROGRESS"
    DONE = "DONE"


@dataclass
class MarketState:
    """Strategy-owned state for a single market.

    Attributes:
        market_id: Market identifier.
        asset: Underlying asset symbol.
        created_ts: Epoch seconds when the first tick was seen.
        phase: Current lifecycle phase.
        entry_token: Side bought on entry.
        entry_fill_ts: Epoch seconds of the first observed entry fill.
        entry_avg: Average entry price at first fill.
        entry_shares: Entry shares at first fill.
        hedge_token: Side bought to hedge.
        hedge_shares: Hedge shares filled.
        hedge_avg: Price of the last hedge fill.
        hedge_attempts: Number of hedge submissions.
        last_hedge_attempt_ts: Epoch seconds of the latest hedge submission.

    """

    market_id: str
    asset: str
    created_ts: float
    phase: Phase = Phase.IDLE
    entry_token: TokenSide | None = None
    entry_fill_ts: float | None = None
    entry_avg: Decimal | None = None
    entry_shares: Decimal = ZERO
    hedge_token: TokenSide | None = None
    hedge_shares: Decimal = ZERO
    hedge_avg: Decimal | None = None
    hedge_attempts: int = 0
    last_hedge_attempt_ts: float | None = None


@dataclass
class KillSwitchState:
    """Process-wide execution-quality guard.

    Attributes:
        entries_disabled: Sticky flag; when set no new entries are opened.
        reason: Why the switch tripped.
        disabled_at: Epoch seconds when the switch tripped.
        stale_book_skips: Evaluations skipped because a book was stale.
        total_evals: Evaluations performed.
        maker_fills: Fills that rested on the book.
        taker_fills: Fills that crossed the spread.
        missing_fee_fills: Fills reported without fee data.

    """

    entries_disabled: bool = False
    reason: str | None = None
    disabled_at: float | None = None
    stale_book_skips: int = 0
    total_evals: int = 0
    maker_fills: int = 0
    taker_fills: int = 0
    missing_fee_fills: int = 0


@dataclass(frozen=True)
class TokenBook:
    """Top-of-book view of one outcome token.

    Attributes:
        token_id: CLOB token identifier.
        best_bid: Highest bid price.
        best_ask: Lowest ask price.
        bid_depth: Shares resting on the bid side.
        ask_depth: Shares resting on the ask side.
        age_ms: Milliseconds since the book was observed.

    """

    token_id: str
    best_bid: Decimal
    best_ask: Decimal
    bid_depth: Decimal = ZERO
    ask_depth: Decimal = ZERO
    age_ms: int = 0

    @property
    def spread(self) -> Decimal:
        """Return best ask minus best bid."""
        return self.best_ask - self.best_bid

    @property
    def mid(self) -> Decimal:
        """Return the midpoint of best bid and best ask."""
        return (self.best_bid + self.best_ask) / _TWO


@dataclass(frozen=True)
class PositionSnapshot:
    """Exchange-reported holdings for one market at tick time."""

    up_shares: Decimal = ZERO
    down_shares: Decimal = ZERO
    avg_up: Decimal | None = None
    avg_down: Decimal | None = None

    def shares(self, side: TokenSide) -> Decimal:
        """Return the shares held on one side."""
        return self.up_shares if side is TokenSide.UP else self.down_shares

    def avg(self, side: TokenSide) -> Decimal | None:
        """Return the average price on one side, if known."""
        return self.avg_up if side is TokenSide.UP else self.avg_down


@dataclass(frozen=True)
class MarketTick:
    """One market-data update for a 15-minute Up/Down market.

    Attributes:
        market_id: Market identifier.
        asset: Underlying asset symbol.
        ts: Epoch seconds of the observation.
        sec_remaining: Seconds until the market closes.
        strike: Price to beat for the UP outcome.
        spot: Latest spot price of the underlying (None if unknown).
        up: UP token book.
        down: DOWN token book.
        position: Current holdings in this market.

    """

    market_id: str
    asset: str
    ts: float
    sec_remaining: float
    strike: Decimal
    spot: Decimal | None
    up: TokenBook
    down: TokenBook
    position: PositionSnapshot = field(default_factory=PositionSnapshot)

    def book(self, side: TokenSide) -> TokenBook:
        """Return the book of one side."""
        return self.up if side is TokenSide.UP else self.down


class Liquidity(Enum):
    """Whether a fill provided or took liquidity."""

    MAKER = "MAKER"
    TAKER = "TAKER"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Fill:
    """An observed execution of one of our orders.

    Attributes:
        market_id: Market identifier.
        asset: Underlying asset symbol.
        order_id: Exchange order identifier.
        token: Side that was filled.
        price: Execution price.
        size: Shares filled.
        fee_usd: Fee charged, or None when the venue did not report it.
        liquidity: Maker or taker.
        ts: Epoch seconds of the fill.
        intent: Order intent, when known by the producer.

    """

    market_id: str
    asset: str
    order_id: str
    token: TokenSide
    price: Decimal
    size: Decimal
    fee_usd: Decimal | None
    liquidity: Liquidity
    ts: float
    intent: Intent | None = None


@dataclass(frozen=True)
class MarketRetired:
    """Upstream signal that a market has ended and its state can be dropped."""

    market_id: str
    asset: str


@dataclass(frozen=True)
class FairEstimate:
    """Fair-price lookup result for one (asset, delta bucket, time bucket) cell.

    Attributes:
        fair_up: Fair probability of the UP outcome.
        samples: Observations backing the cell.
        trusted: Whether the model considers the cell reliable.

    """

    fair_up: Decimal
    samples: int
    trusted: bool


@dataclass(frozen=True)
class PriceDecision:
    """Outcome of maker price validation.

    Attributes:
        ok: True when ``price`` can be submitted.
        price: Tick-rounded price when ok.
        reason: Rejection code when not ok.

    """

    ok: bool
    price: Decimal | None = None
    reason: str | None = None
