"""Async WebSocket client for the Polymarket CLOB user channel.

Authenticate with the Level 2 API credentials, listen for ``trade``
events on our own orders, and convert matched trades into ``Fill``
objects for the runner's channel.  Reconnects with exponential backoff
capped at 60 seconds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, cast

from websockets import ConnectionClosed
from websockets.asyncio.client import ClientConnection, connect

from updown_engine.apps.trader.models import Fill, Liquidity
from updown_engine.core.models import TokenSide

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/user"
_RECONNECT_MAX_DELAY = 60.0
_PING_INTERVAL = 20
_PING_TIMEOUT = 10
_BPS = Decimal(10_000)
_MS_THRESHOLD = Decimal("1e12")


@dataclass(frozen=True)
class TrackedToken:
    """Where an outcome token belongs."""

    market_id: str
    asset: str
    side: TokenSide


class UserFeed:
    """Stream our own fills from the authenticated user channel.

    Args:
        api_key: CLOB API key.
        api_secret: CLOB API secret.
        api_passphrase: CLOB API passphrase.
        url: WebSocket endpoint.
        reconnect_base_delay: Initial reconnect wait in seconds, doubled on
            each consecutive failure up to 60 seconds.

    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        api_passphrase: str,
        *,
        url: str = _WS_URL,
        reconnect_base_delay: float = 5.0,
    ) -> None:
        """Initialize the user feed."""
        self._api_key = api_key
        self._api_secret = api_secret
        self._api_passphrase = api_passphrase
        self._url = url
        self._reconnect_base_delay = reconnect_base_delay
        self._tokens: dict[str, TrackedToken] = {}
        self._ws: ClientConnection | None = None
        self._closed = False

    def track(self, market_id: str, asset: str, up_token_id: str, down_token_id: str) -> None:
        """Map a market's two outcome tokens so trades can be attributed."""
        self._tokens[up_token_id] = TrackedToken(market_id, asset, TokenSide.UP)
        self._tokens[down_token_id] = TrackedToken(market_id, asset, TokenSide.DOWN)

    def untrack(self, market_id: str) -> None:
        """Forget every token of a retired market."""
        for token_id in [t for t, m in self._tokens.items() if m.market_id == market_id]:
            del self._tokens[token_id]

    async def stream(self) -> AsyncIterator[Fill]:
        """Connect and yield fills indefinitely, reconnecting on failure.

        Yields:
            One ``Fill`` per matched order of ours.

        """
        delay = self._reconnect_base_delay
        while not self._closed:
            try:
                async for fill in self._connect_and_listen():
                    yield fill
                    delay = self._reconnect_base_delay
            except ConnectionClosed as exc:
                if self._closed:
                    return
                logger.warning("User channel closed: %s", exc)
            except OSError as exc:
                if self._closed:
                    return
                logger.warning("User channel connection error: %s", exc)

            if self._closed:
                return
            logger.info("Reconnecting user channel in %.1fs...", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, _RECONNECT_MAX_DELAY)

    async def publish_to(self, channel: asyncio.Queue[Any]) -> None:
        """Forward every streamed fill onto a runner channel."""
        async for fill in self.stream():
            await channel.put(fill)

    async def close(self) -> None:
        """Gracefully close the WebSocket connection."""
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        logger.info("UserFeed closed")

    async def _connect_and_listen(self) -> AsyncIterator[Fill]:
        async with connect(
            self._url,
            ping_interval=_PING_INTERVAL,
            ping_timeout=_PING_TIMEOUT,
        ) as ws:
            self._ws = ws
            await ws.send(json.dumps(self._subscribe_message()))
            logger.info("Connected to user channel")
            async for raw in ws:
                for fill in parse_fills(raw, self._tokens, self._api_key, time.time()):
                    yield fill

    def _subscribe_message(self) -> dict[str, object]:
        return {
            "type": "user",
            "markets": [],
            "auth": {
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "passphrase": self._api_passphrase,
            },
        }


def _dec(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _timestamp(value: Any, default: float) -> float:
    """Return epoch seconds from a seconds or milliseconds timestamp."""
    stamp = _dec(value)
    if stamp is None or stamp <= 0:
        return default
    return float(stamp / 1000) if stamp > _MS_THRESHOLD else float(stamp)


def _fee(rate_bps: Any, price: Decimal, size: Decimal) -> Decimal | None:
    """Return the USD fee implied by a bps rate, or None when unreported."""
    rate = _dec(rate_bps)
    if rate is None:
        return None
    return rate / _BPS * price * size


def parse_fills(
    raw: str | bytes,
    tokens: dict[str, TrackedToken],
    api_key: str,
    now: float,
) -> list[Fill]:
    """Convert one user-channel message into fills on tracked tokens.

    Only ``trade`` events with status ``MATCHED`` are used so that later
    ``MINED``/``CONFIRMED`` updates of the same trade are not counted
    twice.  When we were the maker, each of our maker orders inside the
    trade becomes its own fill.

    Args:
        raw: Raw WebSocket message.
        tokens: Token id to market mapping.
        api_key: Our API key, used to pick our maker orders.
        now: Receive time in epoch seconds.

    Returns:
        Fills in message order; empty for unrelated or malformed messages.

    """
    try:
        data: Any = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring unparseable user message")
        return []
    items = cast("list[Any]", data) if isinstance(data, list) else [data]
    fills: list[Fill] = []
    for item in items:
        if isinstance(item, dict):
            fills.extend(_trade_fills(cast("dict[str, Any]", item), tokens, api_key, now))
    return fills


def _trade_fills(
    event: dict[str, Any], tokens: dict[str, TrackedToken], api_key: str, now: float
) -> list[Fill]:
    if event.get("event_type") != "trade" or str(event.get("status", "")).upper() != "MATCHED":
        return []
    ts = _timestamp(event.get("timestamp"), now)

    if str(event.get("trader_side", "")).upper() == "MAKER":
        fills: list[Fill] = []
        for maker in cast("list[dict[str, Any]]", event.get("maker_orders") or []):
            if maker.get("owner") and maker.get("owner") != api_key:
                continue
            fill = _make_fill(
                tokens.get(str(maker.get("asset_id", ""))),
                str(maker.get("order_id", "")),
                _dec(maker.get("price")),
                _dec(maker.get("matched_amount")),
                maker.get("fee_rate_bps"),
                Liquidity.MAKER,
                ts,
            )
            if fill is not None:
                fills.append(fill)
        return fills

    fill = _make_fill(
        tokens.get(str(event.get("asset_id", ""))),
        str(event.get("taker_order_id", "")),
        _dec(event.get("price")),
        _dec(event.get("size")),
        event.get("fee_rate_bps"),
        Liquidity.TAKER,
        ts,
    )
    return [fill] if fill is not None else []


def _make_fill(  # noqa: PLR0913
    token: TrackedToken | None,
    order_id: str,
    price: Decimal | None,
    size: Decimal | None,
    fee_rate_bps: Any,
    liquidity: Liquidity,
    ts: float,
) -> Fill | None:
    if token is None or not order_id or price is None or size is None or size <= 0:
        return None
    return Fill(
        market_id=token.market_id,
        asset=token.asset,
        order_id=order_id,
        token=token.side,
        price=price,
        size=size,
        fee_usd=_fee(fee_rate_bps, price, size),
        liquidity=liquidity,
        ts=ts,
    )
