"""Rate-limited, self-healing order execution against the CLOB.

``OrderExecutionClient`` turns a trading decision into one exchange call
and returns a canonical ``OrderResult``.  Failures never raise out of
``place_order``: each is classified into the closed ``FailureReason`` set
so the strategy can make a local continue/stop decision.

Protections layered around every call:

* a minimum interval between requests; late callers wait, never fail,
* one credential regeneration and one retry on an unauthorized answer,
* a cooldown after an edge-protection block during which placements fail
  fast without touching the network,
* a short-TTL depth cache backing the liquidity precheck.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from decimal import Decimal
from typing import Any, TypeVar

from updown_engine.apps.trader.config import ExecutionConfig
from updown_engine.apps.trader.events import OrderAttemptEvent
from updown_engine.apps.trader.models import FailureReason, FillStatus, OrderResult
from updown_engine.apps.trader.price_guard import round_to_tick
from updown_engine.apps.trader.protocols import AuditSink
from updown_engine.clients.polymarket import PolymarketAPIError, PolymarketClient
from updown_engine.clients.polymarket.models import OrderBook, OrderRequest, OrderStatus
from updown_engine.core.models import ZERO, Side

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HALF = Decimal("0.5")
_LIVE_STATUSES = frozenset({"live", "open", "unmatched", "delayed"})
_BLOCK_MARKERS = ("cloudflare", "blocked", "attention required")
_BALANCE_MARKERS = ("not enough balance", "insufficient", "allowance")
_NO_BOOK_MARKERS = ("orderbook", "order book", "does not exist", "no book")


def classify_error_text(text: str) -> FailureReason:
    """Map an exchange error message onto a failure reason.

    Args:
        text: Error text returned or raised by the exchange.

    Returns:
        ``CLOUDFLARE`` for edge blocks, ``BALANCE`` for funding problems,
        ``NO_ORDERBOOK`` for unknown books, otherwise ``UNKNOWN``.

    """
    lowered = text.lower()
    if any(marker in lowered for marker in _BLOCK_MARKERS):
        return FailureReason.CLOUDFLARE
    if any(marker in lowered for marker in _BALANCE_MARKERS):
        return FailureReason.BALANCE
    if any(marker in lowered for marker in _NO_BOOK_MARKERS):
        return FailureReason.NO_ORDERBOOK
    return FailureReason.UNKNOWN


def classify_fill(status: OrderStatus | None) -> FillStatus:
    """Classify a polled order status.

    Args:
        status: Normalised status, or None if the exchange did not know it.

    Returns:
        ``FILLED`` when matched covers the original size, ``PARTIAL`` when
        some but not all matched, ``OPEN`` while still live, else ``UNKNOWN``.

    """
    if status is None:
        return FillStatus.UNKNOWN
    if status.original_size > ZERO and status.size_matched >= status.original_size:
        return FillStatus.FILLED
    if status.size_matched > ZERO:
        return FillStatus.PARTIAL
    if status.status in _LIVE_STATUSES:
        return FillStatus.OPEN
    return FillStatus.UNKNOWN


class OrderExecutionClient:
    """Place, cancel and verify orders with throttling and block backoff.

    Args:
        client: Polymarket facade used for every exchange call.
        config: Throttle, cooldown, cache and pricing settings.
        audit: Optional sink receiving one event per placement attempt.
        clock: Monotonic clock used for intervals, TTLs and cooldowns.
        wall_clock: Wall clock stamped on audit events.

    """

    def __init__(
        self,
        client: PolymarketClient,
        config: ExecutionConfig | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the execution client."""
        self._client = client
        self._config = config or ExecutionConfig()
        self._audit = audit
        self._clock = clock
        self._wall_clock = wall_clock
        self._throttle_lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._cooldown_until = 0.0
        self._creds_ready = False
        self._book_cache: dict[str, tuple[float, OrderBook]] = {}
        self._balance: Decimal | None = None
        self._balance_at: float | None = None

    @property
    def cooldown_remaining(self) -> float:
        """Return seconds left in the block cooldown (0 when inactive)."""
        return max(0.0, self._cooldown_until - self._clock())

    def _arm_cooldown(self, reason: str) -> None:
        self._cooldown_until = self._clock() + self._config.cloudflare_cooldown_seconds
        logger.warning(
            "Edge-protection block detected (%s); failing fast for %.0fs",
            reason,
            self._config.cloudflare_cooldown_seconds,
        )

    async def _throttle(self) -> None:
        """Wait until the minimum request interval has elapsed."""
        async with self._throttle_lock:
            if self._last_request_at is not None:
                wait = self._config.min_request_interval_seconds - (
                    self._clock() - self._last_request_at
                )
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = self._clock()

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run one throttled exchange call, retrying once after re-auth.

        Raises:
            PolymarketAPIError: When the call fails, including a second
                unauthorized answer after regeneration.

        """
        await self._throttle()
        try:
            return await fn(*args)
        except PolymarketAPIError as exc:
            if not exc.is_unauthorized:
                raise
            logger.warning("Unauthorized response (%s); regenerating API credentials", exc)
        await self._client.regenerate_api_creds()
        self._creds_ready = True
        await self._throttle()
        return await fn(*args)

    async def _ensure_creds(self) -> None:
        if not self._creds_ready:
            await self._client.ensure_api_creds()
            self._creds_ready = True

    def _classify(self, exc: PolymarketAPIError) -> FailureReason:
        """Classify a raised exchange error, arming the cooldown on blocks."""
        if exc.is_blocked:
            self._arm_cooldown(exc.msg[:80])
            return FailureReason.CLOUDFLARE
        if exc.is_unauthorized:
            return FailureReason.AUTH
        return classify_error_text(exc.msg)

    async def _get_book(self, token_id: str) -> OrderBook:
        """Return the order book, served from cache while fresh."""
        cached = self._book_cache.get(token_id)
        now = self._clock()
        if cached is not None and now - cached[0] < self._config.depth_cache_ttl_seconds:
            return cached[1]
        book = await self._call(self._client.get_order_book, token_id)
        self._book_cache[token_id] = (self._clock(), book)
        return book

    def improve_price(self, side: Side, price: Decimal) -> Decimal:
        """Apply the price improvement for a side, tick-rounded and bounded.

        Args:
            side: Order direction.
            price: Requested limit price.

        Returns:
            Buy prices raised (capped at ``max_price``), sell prices lowered
            (floored at one tick).

        """
        cfg = self._config
        improvement = cfg.improvement_above_half if price > _HALF else cfg.improvement_below_half
        if side is Side.BUY:
            return min(round_to_tick(price + improvement, cfg.tick_size), cfg.max_price)
        return max(round_to_tick(price - improvement, cfg.tick_size, up=True), cfg.tick_size)

    async def place_order(
        self,
        token_id: str,
        side: Side,
        price: Decimal,
        size: Decimal,
        order_type: str = "GTC",
        *,
        post_only: bool = False,
    ) -> OrderResult:
        """Submit a limit order and classify the outcome.

        Args:
            token_id: CLOB token identifier.
            side: Order direction.
            price: Requested limit price before improvement.
            size: Number of shares.
            order_type: ``"GTC"``, ``"GTD"`` or ``"FOK"``.
            post_only: Keep the improved price strictly inside the spread so
                the order rests as a maker.

        Returns:
            Canonical result.  A placed order whose verification poll fails
            is reported ``success=True`` with ``fill_status=pending``.

        """
        request = OrderRequest(
            token_id=token_id, side=side.value, price=price, size=size, order_type=order_type
        )
        result = await self._submit(request, post_only=post_only)
        return self._finish(request, result)

    async def _submit(self, request: OrderRequest, *, post_only: bool) -> OrderResult:
        """Run the precheck, placement and verification for one request."""
        side = Side(request.side)
        if self.cooldown_remaining > 0:
            return OrderResult(
                success=False,
                failure_reason=FailureReason.CLOUDFLARE,
                price=request.price,
                size=request.size,
                error=f"cooldown active ({self.cooldown_remaining:.0f}s left)",
            )

        try:
            await self._ensure_creds()
            book = await self._get_book(request.token_id)
        except PolymarketAPIError as exc:
            return self._failed(request, self._classify(exc), str(exc))

        failure = self._check_liquidity(side, book)
        if failure is not None:
            return self._failed(request, failure, f"{failure.value} for {request.token_id}")

        final_price = self.improve_price(side, request.price)
        if post_only:
            final_price = self._keep_inside_spread(side, final_price, book)
        request = replace(request, price=final_price)

        try:
            placed = await self._call(self._client.place_order, request)
        except PolymarketAPIError as exc:
            return self._failed(request, self._classify(exc), str(exc))

        if not placed.accepted:
            reason = classify_error_text(placed.error)
            if reason is FailureReason.CLOUDFLARE:
                self._arm_cooldown(placed.error[:80])
            return self._failed(request, reason, placed.error)

        return await self._verify(placed.order_id, final_price, request.size)

    @staticmethod
    def _failed(request: OrderRequest, reason: FailureReason, error: str) -> OrderResult:
        return OrderResult(
            success=False,
            failure_reason=reason,
            price=request.price,
            size=request.size,
            error=error,
        )

    def _check_liquidity(self, side: Side, book: OrderBook) -> FailureReason | None:
        if not book.bids and not book.asks:
            return FailureReason.NO_ORDERBOOK
        depth = book.ask_depth if side is Side.BUY else book.bid_depth
        if depth < self._config.min_depth_shares:
            return FailureReason.NO_LIQUIDITY
        return None

    def _keep_inside_spread(self, side: Side, price: Decimal, book: OrderBook) -> Decimal:
        tick = self._config.tick_size
        if side is Side.BUY and book.best_ask is not None:
            return min(price, book.best_ask - tick)
        if side is Side.SELL and book.best_bid is not None:
            return max(price, book.best_bid + tick)
        return price

    async def _verify(self, order_id: str, price: Decimal, size: Decimal) -> OrderResult:
        """Poll the order once and classify its fill state."""
        try:
            status = await self._call(self._client.get_order, order_id)
        except PolymarketAPIError as exc:
            logger.warning("Verification of order %s failed: %s", order_id, exc)
            if exc.is_blocked:
                self._arm_cooldown(exc.msg[:80])
            return OrderResult(
                success=True,
                order_id=order_id,
                fill_status=FillStatus.PENDING,
                price=price,
                size=size,
                error=str(exc),
            )
        return OrderResult(
            success=True,
            order_id=order_id,
            fill_status=classify_fill(status),
            price=price,
            size=size,
            filled_size=status.size_matched if status is not None else ZERO,
        )

    def _finish(self, request: OrderRequest, result: OrderResult) -> OrderResult:
        """Log and audit one attempt, then return its result."""
        price = result.price if result.price is not None else request.price
        if result.success:
            logger.info(
                "Order %s %s %s @ %s on %s: %s",
                result.order_id,
                request.side,
                request.size,
                price,
                request.token_id[:16],
                result.fill_status.value,
            )
        else:
            logger.warning(
                "Order %s %s @ %s on %s failed (%s): %s",
                request.side,
                request.size,
                price,
                request.token_id[:16],
                result.failure_reason.value if result.failure_reason else "unknown",
                result.error,
            )
        if self._audit is not None:
            self._audit.emit(
                OrderAttemptEvent(
                    ts=self._wall_clock(),
                    token_id=request.token_id,
                    side=Side(request.side),
                    price=price,
                    size=request.size,
                    order_type=request.order_type,
                    success=result.success,
                    order_id=result.order_id,
                    fill_status=result.fill_status.value,
                    failure_reason=result.failure_reason.value if result.failure_reason else None,
                    error=result.error,
                )
            )
        return result

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an open order.

        Args:
            order_id: Exchange order identifier.

        Returns:
            True when the exchange confirmed the cancellation.

        """
        if self.cooldown_remaining > 0:
            logger.warning("Cancel of %s skipped: block cooldown active", order_id)
            return False
        try:
            await self._ensure_creds()
            response = await self._call(self._client.cancel_order, order_id)
        except PolymarketAPIError as exc:
            self._classify(exc)
            logger.warning("Cancel of %s failed: %s", order_id, exc)
            return False
        not_canceled = response.get("not_canceled") if isinstance(response, dict) else None
        if not_canceled:
            logger.warning("Cancel of %s refused: %s", order_id, not_canceled)
            return False
        logger.info("Cancelled order %s", order_id)
        return True

    async def get_balance(self) -> Decimal | None:
        """Return the USDC balance, cached for a short TTL.

        Returns:
            Fresh or cached balance; on query failure the last known value,
            or None when no balance was ever fetched.

        """
        now = self._clock()
        if (
            self._balance_at is not None
            and now - self._balance_at < self._config.balance_cache_ttl_seconds
        ):
            return self._balance
        try:
            await self._ensure_creds()
            balance = await self._call(self._client.get_balance, "COLLATERAL")
        except PolymarketAPIError as exc:
            self._classify(exc)
            logger.warning("Balance query failed, using last known %s: %s", self._balance, exc)
            return self._balance
        self._balance = balance.balance
        self._balance_at = self._clock()
        return self._balance
