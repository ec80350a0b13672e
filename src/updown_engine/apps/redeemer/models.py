"""Value objects and configuration for the claim redemption engine."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import ClassVar

from updown_engine.core.config import ConfigLoader
from updown_engine.core.models import ZERO


@dataclass(frozen=True)
class RedeemerConfig:
    """Timing, batching and retry policy of the redemption engine.

    Attributes:
        interval_seconds: Seconds between cycles when running as a loop.
        min_value_usd: Positions worth less are not claimed.
        batch_size: Maximum redemptions submitted per cycle.
        claim_delay_seconds: Pause between redemptions within a batch.
        max_retries: Retries before a claim is abandoned.
        retry_backoff_seconds: Backoff unit; the n-th retry waits n units.
        gas_limit: Gas units reserved per redemption.
        receipt_timeout_seconds: Seconds to wait for a receipt.

    """

    interval_seconds: float = 300
    min_value_usd: Decimal = Decimal("0.10")
    batch_size: int = 5
    claim_delay_seconds: float = 3
    max_retries: int = 3
    retry_backoff_seconds: float = 30
    gas_limit: int = 300_000
    receipt_timeout_seconds: int = 120


def redeemer_config_from(loader: ConfigLoader) -> RedeemerConfig:
    """Build the redemption policy from the ``redeemer`` section.

    Args:
        loader: Loaded configuration.

    Returns:
        Frozen redeemer configuration.

    """
    s = loader.get_section("redeemer")
    d = RedeemerConfig()
    return RedeemerConfig(
        interval_seconds=float(s.get("interval_seconds", d.interval_seconds)),
        min_value_usd=Decimal(str(s.get("min_value_usd", d.min_value_usd))),
        batch_size=int(s.get("batch_size", d.batch_size)),
        claim_delay_seconds=float(s.get("claim_delay_seconds", d.claim_delay_seconds)),
        max_retries=int(s.get("max_retries", d.max_retries)),
        retry_backoff_seconds=float(s.get("retry_backoff_seconds", d.retry_backoff_seconds)),
        gas_limit=int(s.get("gas_limit", d.gas_limit)),
        receipt_timeout_seconds=int(s.get("receipt_timeout_seconds", d.receipt_timeout_seconds)),
    )


class ClaimErrorKind(Enum):
    """Classified cause of a failed redemption."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE = "nonce"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    REVERTED = "reverted"
    NO_PAYOUT_EVENT = "no_payout_event"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClaimCandidate:
    """A redeemable position selected for a claim.

    Attributes:
        condition_id: Settlement condition, the idempotency key.
        wallet: Wallet that holds the position.
        value_usd: Current value reported by the positions feed.
        title: Market title, for logs.

    """

    condition_id: str
    wallet: str
    value_usd: Decimal
    title: str = ""


@dataclass(frozen=True)
class ClaimOutcome:
    """Result of one redemption attempt.

    Attributes:
        condition_id: Settlement condition redeemed.
        success: True when a payout event was observed.
        tx_hash: Transaction hash, when one was broadcast.
        payout_usd: USDC paid out (zero on failure).
        error_kind: Classified cause on failure.
        retryable: Whether the failure may be retried.
        error: Diagnostic text.

    """

    condition_id: str
    success: bool
    tx_hash: str | None = None
    payout_usd: Decimal = ZERO
    error_kind: ClaimErrorKind | None = None
    retryable: bool = False
    error: str = ""


@dataclass(frozen=True)
class ClaimRecord:
    """A confirmed claim keyed by condition id."""

    condition_id: str
    tx_hash: str
    payout_usd: Decimal
    claimed_at: float


@dataclass
class PendingRetry:
    """A failed claim scheduled for another attempt."""

    candidate: ClaimCandidate
    retry_count: int
    next_attempt_at: float
    last_error: str


@dataclass(frozen=True)
class CycleResult:
    """Summary of one redemption cycle.

    Attributes:
        skipped: True when another cycle was already running.
        candidates: Redeemable positions found after filtering.
        attempted: Redemptions attempted (retries included).
        confirmed: Redemptions confirmed by a payout event.
        failed: Redemptions that failed.
        total_payout_usd: USDC claimed in this cycle.
        outcomes: Every attempt outcome, in order.

    """

    skipped: bool = False
    candidates: int = 0
    attempted: int = 0
    confirmed: int = 0
    failed: int = 0
    total_payout_usd: Decimal = ZERO
    outcomes: tuple[ClaimOutcome, ...] = ()


@dataclass(frozen=True)
class ClaimStats:
    """Lifetime counters of the redemption engine."""

    confirmed: int
    pending_retries: int
    abandoned: int
    total_claimed_usd: Decimal
    cycles: int


@dataclass(frozen=True)
class ClaimAttemptEvent:
    """Audit row for one redemption attempt."""

    event_type: ClassVar[str] = "CLAIM_ATTEMPT"

    ts: float
    condition_id: str
    wallet: str
    value_usd: Decimal
    success: bool
    tx_hash: str | None
    payout_usd: Decimal
    error_kind: str | None
    error: str
    retry_count: int
