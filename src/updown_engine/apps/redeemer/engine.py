"""Periodic on-chain redemption of settled positions.

``ClaimRedemptionEngine`` runs one cycle at a time behind an
``asyncio.Lock``; a cycle triggered while another is running returns an
empty, skipped result instead of waiting.  Each cycle:

1. retries claims whose backoff has elapsed,
2. fetches redeemable positions for the proxy wallet and the signer,
3. drops confirmed or low-value rows and keeps the highest-value row per
   condition id,
4. redeems up to ``batch_size`` conditions, each after a gas precheck,
5. records a confirmed claim once a ``PayoutRedemption`` event is seen,
6. schedules retryable failures with linear backoff and abandons them
   after ``max_retries``.

The condition id is the idempotency key: a confirmed condition is never
redeemed again, so its payout cannot be counted twice.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from updown_engine.apps.redeemer.models import (
    ClaimAttemptEvent,
    ClaimCandidate,
    ClaimErrorKind,
    ClaimOutcome,
    ClaimRecord,
    ClaimStats,
    CycleResult,
    PendingRetry,
    RedeemerConfig,
)
from updown_engine.apps.trader.protocols import AuditSink
from updown_engine.clients.polymarket import PolymarketClient, PolymarketError
from updown_engine.core.models import ZERO

logger = logging.getLogger(__name__)

_SUCCESS_STATUS = 1
_RETRYABLE_MARKERS: tuple[tuple[str, ClaimErrorKind], ...] = (
    ("nonce", ClaimErrorKind.NONCE),
    ("timeout", ClaimErrorKind.TIMEOUT),
    ("timed out", ClaimErrorKind.TIMEOUT),
    ("rate", ClaimErrorKind.RATE_LIMIT),
    ("429", ClaimErrorKind.RATE_LIMIT),
    ("gateway", ClaimErrorKind.RATE_LIMIT),
    ("temporarily", ClaimErrorKind.RATE_LIMIT),
)


def classify_claim_error(message: str) -> tuple[ClaimErrorKind, bool]:
    """Classify a redemption error message.

    Args:
        message: Error text from the RPC node or the chain.

    Returns:
        Tuple of ``(kind, retryable)``.  Insufficient funds is the only
        non-retryable kind; unrecognised errors default to retryable.

    """
    lowered = message.lower()
    if "insufficient funds" in lowered:
        return ClaimErrorKind.INSUFFICIENT_FUNDS, False
    for marker, kind in _RETRYABLE_MARKERS:
        if marker in lowered:
            return kind, True
    return ClaimErrorKind.UNKNOWN, True


class ConfirmedClaimStore(Protocol):
    """Source of claims confirmed by earlier runs."""

    async def get_confirmed_claims(self) -> list[ClaimRecord]:
        """Return every confirmed claim persisted so far."""
        ...


class ClaimRedemptionEngine:
    """Redeem settled positions on a timer with single-flight cycles.

    Args:
        client: Authenticated Polymarket client.
        config: Batching, retry and timing policy.
        audit: Optional sink receiving one event per attempt.
        store: Optional store of previously confirmed claims.
        clock: Wall-clock source for backoff and records.
        sleep: Awaitable delay used between claims and cycles.

    """

    def __init__(  # noqa: PLR0913
        self,
        client: PolymarketClient,
        config: RedeemerConfig | None = None,
        audit: AuditSink | None = None,
        store: ConfirmedClaimStore | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the engine with empty claim state."""
        self._client = client
        self._config = config or RedeemerConfig()
        self._audit = audit
        self._store = store
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._confirmed: dict[str, ClaimRecord] = {}
        self._pending: dict[str, PendingRetry] = {}
        self._abandoned: dict[str, str] = {}
        self._cycles = 0
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def pending_retries(self) -> dict[str, PendingRetry]:
        """Return a copy of the retry schedule keyed by condition id."""
        return dict(self._pending)

    @property
    def confirmed(self) -> dict[str, ClaimRecord]:
        """Return a copy of confirmed claims keyed by condition id."""
        return dict(self._confirmed)

    def get_claim_stats(self) -> ClaimStats:
        """Return lifetime counters."""
        return ClaimStats(
            confirmed=len(self._confirmed),
            pending_retries=len(self._pending),
            abandoned=len(self._abandoned),
            total_claimed_usd=sum((r.payout_usd for r in self._confirmed.values()), ZERO),
            cycles=self._cycles,
        )

    async def load_confirmed(self) -> int:
        """Seed the confirmed set from the store so restarts stay idempotent.

        Returns:
            Number of confirmed claims loaded.

        """
        if self._store is None:
            return 0
        for record in await self._store.get_confirmed_claims():
            self._confirmed.setdefault(record.condition_id, record)
        logger.info("Loaded %d confirmed claims", len(self._confirmed))
        return len(self._confirmed)

    async def run_cycle(self) -> CycleResult:
        """Run one redemption cycle unless one is already in progress.

        Returns:
            Cycle summary; ``skipped=True`` when another cycle holds the lock.

        """
        if self._lock.locked():
            logger.info("Redemption cycle already running; skipping")
            return CycleResult(skipped=True)
        async with self._lock:
            self._cycles += 1
            return await self._run_cycle_locked()

    async def _run_cycle_locked(self) -> CycleResult:
        outcomes: list[ClaimOutcome] = []
        budget = self._config.batch_size

        now = self._clock()
        due = [
            retry
            for cid, retry in self._pending.items()
            if retry.next_attempt_at <= now and cid not in self._confirmed
        ]
        for retry in due[:budget]:
            if outcomes:
                await self._sleep(self._config.claim_delay_seconds)
            outcomes.append(await self._attempt(retry.candidate, retry.retry_count))
        budget -= len(outcomes)

        candidates = await self._fetch_candidates()
        fresh = [
            c
            for c in candidates
            if c.condition_id not in self._pending and c.condition_id not in self._abandoned
        ]
        for candidate in fresh[: max(budget, 0)]:
            if outcomes:
                await self._sleep(self._config.claim_delay_seconds)
            outcomes.append(await self._attempt(candidate, 0))

        confirmed = [o for o in outcomes if o.success]
        result = CycleResult(
            candidates=len(candidates),
            attempted=len(outcomes),
            confirmed=len(confirmed),
            failed=len(outcomes) - len(confirmed),
            total_payout_usd=sum((o.payout_usd for o in confirmed), ZERO),
            outcomes=tuple(outcomes),
        )
        logger.info(
            "Redemption cycle: %d candidates, %d attempted, %d confirmed, $%s claimed",
            result.candidates,
            result.attempted,
            result.confirmed,
            result.total_payout_usd,
        )
        return result

    async def _fetch_candidates(self) -> list[ClaimCandidate]:
        """Collect claimable positions across wallets, best first."""
        best: dict[str, ClaimCandidate] = {}
        for wallet in self._client.wallets():
            try:
                positions = await self._client.get_positions(wallet)
            except PolymarketError as exc:
                logger.warning("Position fetch failed for %s: %s", wallet, exc)
                continue
            for position in positions:
                cid = position.condition_id
                if not position.redeemable or not cid or cid in self._confirmed:
                    continue
                if position.current_value < self._config.min_value_usd:
                    continue
                current = best.get(cid)
                if current is None or position.current_value > current.value_usd:
                    best[cid] = ClaimCandidate(
                        condition_id=cid,
                        wallet=position.wallet or wallet,
                        value_usd=position.current_value,
                        title=position.title,
                    )
        return sorted(best.values(), key=lambda c: c.value_usd, reverse=True)

    async def _attempt(self, candidate: ClaimCandidate, retry_count: int) -> ClaimOutcome:
        """Redeem one condition and update confirmed/pending state."""
        if candidate.condition_id in self._confirmed:
            record = self._confirmed[candidate.condition_id]
            return ClaimOutcome(
                condition_id=candidate.condition_id,
                success=False,
                tx_hash=record.tx_hash,
                error="already confirmed",
            )
        outcome = await self._redeem(candidate)
        self._record(candidate, outcome, retry_count)
        return outcome

    async def _redeem(self, candidate: ClaimCandidate) -> ClaimOutcome:
        cid = candidate.condition_id
        try:
            quote = await self._client.quote_redemption_gas(self._config.gas_limit)
        except PolymarketError as exc:
            return _failure(cid, str(exc))
        if not quote.affordable:
            return ClaimOutcome(
                condition_id=cid,
                success=False,
                error_kind=ClaimErrorKind.INSUFFICIENT_FUNDS,
                retryable=False,
                error=(
                    f"insufficient funds for gas: need {quote.worst_case_cost} wei, "
                    f"have {quote.balance_wei}"
                ),
            )

        try:
            tx_hash = await self._client.submit_redemption(cid, quote)
        except PolymarketError as exc:
            return _failure(cid, str(exc))

        try:
            receipt = await self._client.wait_for_redemption(
                tx_hash, self._config.receipt_timeout_seconds
            )
        except PolymarketError as exc:
            return _failure(cid, str(exc), tx_hash)
        if receipt is None:
            return ClaimOutcome(
                condition_id=cid,
                success=False,
                tx_hash=tx_hash,
                error_kind=ClaimErrorKind.TIMEOUT,
                retryable=True,
                error=f"no receipt after {self._config.receipt_timeout_seconds}s",
            )
        if receipt.status != _SUCCESS_STATUS:
            return ClaimOutcome(
                condition_id=cid,
                success=False,
                tx_hash=tx_hash,
                error_kind=ClaimErrorKind.REVERTED,
                retryable=True,
                error=f"transaction reverted in block {receipt.block_number}",
            )
        if not receipt.payouts:
            return ClaimOutcome(
                condition_id=cid,
                success=False,
                tx_hash=tx_hash,
                error_kind=ClaimErrorKind.NO_PAYOUT_EVENT,
                retryable=True,
                error="receipt has no PayoutRedemption event",
            )
        return ClaimOutcome(
            condition_id=cid, success=True, tx_hash=tx_hash, payout_usd=receipt.total_payout
        )

    def _record(self, candidate: ClaimCandidate, outcome: ClaimOutcome, retry_count: int) -> None:
        """Apply an outcome to the confirmed set and the retry schedule."""
        cid = candidate.condition_id
        now = self._clock()
        if outcome.success:
            self._pending.pop(cid, None)
            self._confirmed[cid] = ClaimRecord(
                condition_id=cid,
                tx_hash=outcome.tx_hash or "",
                payout_usd=outcome.payout_usd,
                claimed_at=now,
            )
            logger.info(
                "Claimed $%s for %s (%s) tx=%s",
                outcome.payout_usd,
                cid[:20],
                candidate.title,
                outcome.tx_hash,
            )
        elif not outcome.retryable:
            self._pending.pop(cid, None)
            logger.warning("Claim for %s not retryable: %s", cid[:20], outcome.error)
        elif retry_count >= self._config.max_retries:
            self._pending.pop(cid, None)
            self._abandoned[cid] = outcome.error
            logger.warning(
                "Claim for %s abandoned after %d retries: %s", cid[:20], retry_count, outcome.error
            )
        else:
            next_count = retry_count + 1
            self._pending[cid] = PendingRetry(
                candidate=candidate,
                retry_count=next_count,
                next_attempt_at=now + self._config.retry_backoff_seconds * next_count,
                last_error=outcome.error,
            )
            logger.warning(
                "Claim for %s failed (%s); retry %d/%d scheduled",
                cid[:20],
                outcome.error_kind.value if outcome.error_kind else "unknown",
                next_count,
                self._config.max_retries,
            )

        if self._audit is not None:
            self._audit.emit(
                ClaimAttemptEvent(
                    ts=now,
                    condition_id=cid,
                    wallet=candidate.wallet,
                    value_usd=candidate.value_usd,
                    success=outcome.success,
                    tx_hash=outcome.tx_hash,
                    payout_usd=outcome.payout_usd,
                    error_kind=outcome.error_kind.value if outcome.error_kind else None,
                    error=outcome.error,
                    retry_count=retry_count,
                )
            )

    async def start(self) -> None:
        """Load confirmed claims and start the periodic loop."""
        if self._task is not None:
            return
        await self.load_confirmed()
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="claim-redeemer")
        self._task.add_done_callback(_log_task_exception)
        logger.info("Claim redeemer started (every %.0fs)", self._config.interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic loop and wait for it to exit."""
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Claim redeemer stopped: %s", self.get_claim_stats())

    async def _loop(self) -> None:
        while self._running:
            await self.run_cycle()
            await self._sleep(self._config.interval_seconds)


def _failure(condition_id: str, message: str, tx_hash: str | None = None) -> ClaimOutcome:
    kind, retryable = classify_claim_error(message)
    return ClaimOutcome(
        condition_id=condition_id,
        success=False,
        tx_hash=tx_hash,
        error_kind=kind,
        retryable=retryable,
        error=message,
    )


def _log_task_exception(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Claim redeemer loop crashed", exc_info=exc)
