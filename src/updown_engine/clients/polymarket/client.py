"""Typed async facade for the Polymarket exchange and settlement layer.

Compose the synchronous CLOB adapter, the async Data API client, and the
synchronous CTF redeemer into a single async interface.  Synchronous calls
are wrapped in ``asyncio.to_thread()`` to avoid blocking the event loop,
and every exchange payload is normalised here into a typed dataclass so
downstream code depends on one canonical shape.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from web3 import Web3
from web3.exceptions import Web3Exception

from updown_engine.clients.polymarket import _clob_adapter, _ctf_redeemer
from updown_engine.clients.polymarket._data_api import DataApiClient
from updown_engine.clients.polymarket.exceptions import BlockchainError, PolymarketAPIError
from updown_engine.clients.polymarket.models import (
    Balance,
    GasQuote,
    OrderBook,
    OrderLevel,
    OrderRequest,
    OrderStatus,
    PlacedOrder,
    Position,
    RedemptionReceipt,
)
from updown_engine.core.models import ZERO

logger = logging.getLogger(__name__)

_TWO = Decimal(2)
_USDC_DECIMALS = Decimal("1e6")
_DEFAULT_RPC_URLS = (
    "https://polygon-rpc.com",
    "https://rpc-mainnet.matic.quiknode.pro",
    "https://polygon-mainnet.public.blastapi.io",
)


class PolymarketClient:
    """Typed async client for Polymarket trading and redemption.

    Args:
        host: Base URL for the Polymarket CLOB API.
        data_api_url: Base URL for the Data API positions feed.
        private_key: Polygon wallet private key (hex ``0x…`` string).
        api_key: Pre-existing CLOB API key.
        api_secret: Pre-existing CLOB API secret.
        api_passphrase: Pre-existing CLOB API passphrase.
        funder_address: Proxy wallet address holding the trading funds.
        rpc_urls: Polygon JSON-RPC endpoints, tried in order.

    """

    CLOB_HOST = "https://clob.polymarket.com"
    DATA_API_URL = "https://data-api.polymarket.com"
    RPC_URLS = _DEFAULT_RPC_URLS

    def __init__(  # noqa: PLR0913
        self,
        host: str = CLOB_HOST,
        data_api_url: str = DATA_API_URL,
        private_key: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        api_passphrase: str | None = None,
        funder_address: str | None = None,
        rpc_urls: tuple[str, ...] = _DEFAULT_RPC_URLS,
    ) -> None:
        """Initialize the Polymarket client.

        When ``private_key`` is provided, create an authenticated client
        capable of placing trades and redeeming positions.  If API
        credentials are also provided they are used as-is; otherwise they
        are derived lazily on the first authenticated call.  Without a
        private key the client operates in read-only mode.

        Args:
            host: Base URL for the Polymarket CLOB API.
            data_api_url: Base URL for the Data API.
            private_key: Polygon wallet private key.
            api_key: Pre-existing CLOB API key.
            api_secret: Pre-existing CLOB API secret.
            api_passphrase: Pre-existing CLOB API passphrase.
            funder_address: Proxy wallet address holding the trading funds.
            rpc_urls: Polygon JSON-RPC endpoints.

        """
        self._private_key = private_key
        self._funder_address = funder_address
        self._rpc_urls = list(rpc_urls)
        self._has_creds = bool(api_key and api_secret and api_passphrase)
        if private_key is not None:
            creds = (
                (api_key, api_secret, api_passphrase)
                if api_key and api_secret and api_passphrase
                else None
            )
            self._clob_client: Any = _clob_adapter.create_authenticated_clob_client(
                host, private_key, creds=creds, funder=funder_address
            )
        else:
            self._clob_client = _clob_adapter.create_clob_client(host)
        self._data_api = DataApiClient(base_url=data_api_url)
        self._clob_lock = asyncio.Lock()
        self._w3: Web3 | None = None

    @property
    def authenticated(self) -> bool:
        """Return True when a signing key was configured."""
        return self._private_key is not None

    def _require_auth(self) -> None:
        """Raise an error if the client is not authenticated.

        Raises:
            PolymarketAPIError: When no private key was provided at init.

        """
        if not self.authenticated:
            raise PolymarketAPIError(
                msg="Authentication required. Set POLYMARKET_PRIVATE_KEY.",
                status_code=401,
            )

    async def ensure_api_creds(self) -> None:
        """Derive Level 2 API credentials once if none were configured.

        Raises:
            PolymarketAPIError: When not authenticated or derivation fails.

        """
        self._require_auth()
        if self._has_creds:
            return
        await self.regenerate_api_creds()

    async def regenerate_api_creds(self) -> tuple[str, str, str]:
        """Create or re-derive API credentials and install them on the client.

        Returns:
            Tuple of ``(api_key, api_secret, api_passphrase)``.

        Raises:
            PolymarketAPIError: When not authenticated or derivation fails.

        """
        self._require_auth()
        async with self._clob_lock:
            creds = await asyncio.to_thread(_clob_adapter.derive_api_creds, self._clob_client)
        self._has_creds = True
        logger.info("API credentials derived for key %s...", creds[0][:8])
        return creds

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Fetch a typed order book for a token.

        Args:
            token_id: CLOB token identifier.

        Returns:
            Typed order book; empty when the CLOB has no book for the token.

        Raises:
            PolymarketAPIError: When the CLOB API call fails.

        """
        async with self._clob_lock:
            raw = await asyncio.to_thread(
                _clob_adapter.fetch_order_book,
                self._clob_client,
                token_id,
            )
        if raw is None:
            return OrderBook(token_id=token_id, bids=(), asks=(), spread=ZERO, midpoint=ZERO)
        return _parse_order_book(token_id, raw)

    async def place_order(self, request: OrderRequest) -> PlacedOrder:
        """Submit a limit order and normalise the exchange response.

        Args:
            request: Order parameters.

        Returns:
            Canonical ``PlacedOrder``; ``accepted`` is False when the CLOB
            answered with an error message instead of raising.

        Raises:
            PolymarketAPIError: When not authenticated or the request fails.

        """
        self._require_auth()
        async with self._clob_lock:
            raw = await asyncio.to_thread(
                _clob_adapter.place_order,
                self._clob_client,
                request.token_id,
                request.side,
                float(request.price),
                float(request.size),
                request.order_type,
            )
        return _parse_placed_order(raw)

    async def get_order(self, order_id: str) -> OrderStatus | None:
        """Fetch the current status of an order.

        Args:
            order_id: Identifier of the order.

        Returns:
            Normalised status, or ``None`` if the CLOB does not know the order.

        Raises:
            PolymarketAPIError: When not authenticated or the query fails.

        """
        self._require_auth()
        async with self._clob_lock:
            raw = await asyncio.to_thread(_clob_adapter.get_order, self._clob_client, order_id)
        if raw is None:
            return None
        return _parse_order_status(order_id, raw)

    async def cancel_order(self, order_id: str) -> dict[str, Any]:
        """Cancel an open order.

        Args:
            order_id: Identifier of the order to cancel.

        Returns:
            Raw API response confirming the cancellation.

        Raises:
            PolymarketAPIError: When not authenticated or cancellation fails.

        """
        self._require_auth()
        async with self._clob_lock:
            return await asyncio.to_thread(_clob_adapter.cancel_order, self._clob_client, order_id)

    async def get_balance(self, asset_type: str = "COLLATERAL") -> Balance:
        """Fetch the balance and allowance for an asset.

        Args:
            asset_type: ``"COLLATERAL"`` for USDC or ``"CONDITIONAL"`` for tokens.

        Returns:
            Typed balance with balance and allowance amounts.

        Raises:
            PolymarketAPIError: When not authenticated or the query fails.

        """
        self._require_auth()
        async with self._clob_lock:
            raw = await asyncio.to_thread(_clob_adapter.get_balance, self._clob_client, asset_type)
        return Balance(
            asset_type=asset_type,
            balance=_safe_decimal(raw.get("balance")) / _USDC_DECIMALS,
            allowance=_safe_decimal(raw.get("allowance")) / _USDC_DECIMALS,
        )

    def wallets(self) -> list[str]:
        """Return the wallets to scan for positions: proxy wallet, then signer EOA.

        Returns:
            Distinct wallet addresses (case-insensitive), proxy first.

        """
        candidates: list[str] = []
        if self._funder_address:
            candidates.append(self._funder_address)
        if self._private_key:
            candidates.append(_clob_adapter.derive_funder_address(self._private_key))
        seen: set[str] = set()
        result: list[str] = []
        for wallet in candidates:
            if wallet.lower() not in seen:
                seen.add(wallet.lower())
                result.append(wallet)
        return result

    async def get_positions(self, wallet: str) -> list[Position]:
        """Fetch every position a wallet holds from the Data API.

        Args:
            wallet: Wallet address to query.

        Returns:
            Typed positions across all pages; zero-size rows are dropped.

        Raises:
            PolymarketAPIError: When the Data API request fails.

        """
        raw_positions = await self._data_api.get_positions(wallet)
        results: list[Position] = []
        for raw in raw_positions:
            position = _parse_position(raw, wallet)
            if position.size > ZERO:
                results.append(position)
        return results

    async def _web3(self) -> Web3:
        """Return a connected ``Web3`` instance, connecting on first use."""
        if self._w3 is None:
            self._w3 = await asyncio.to_thread(_ctf_redeemer.connect, self._rpc_urls)
        return self._w3

    async def quote_redemption_gas(self, gas_limit: int) -> GasQuote:
        """Quote worst-case redemption gas against the signer's POL balance.

        Args:
            gas_limit: Gas units reserved per redemption.

        Returns:
            Gas quote for the signing EOA.

        Raises:
            PolymarketAPIError: When not authenticated.
            BlockchainError: When no RPC endpoint is reachable or the call fails.

        """
        self._require_auth()
        w3 = await self._web3()
        address = _ctf_redeemer.signer_address(w3, str(self._private_key))
        return await _chain_call("quote gas", _ctf_redeemer.quote_gas, w3, address, gas_limit)

    async def submit_redemption(self, condition_id: str, quote: GasQuote) -> str:
        """Broadcast a ``redeemPositions`` transaction for one condition.

        Args:
            condition_id: Resolved market condition ID.
            quote: Gas quote whose fee cap and limit are used.

        Returns:
            Transaction hash.

        Raises:
            PolymarketAPIError: When not authenticated.
            BlockchainError: When no RPC endpoint is reachable or the call fails.

        """
        self._require_auth()
        w3 = await self._web3()
        return await _chain_call(
            f"redeem {condition_id[:20]}",
            _ctf_redeemer.submit_redemption,
            w3,
            str(self._private_key),
            condition_id,
            gas_limit=quote.gas_limit,
            gas_price=quote.max_fee_per_gas,
        )

    async def wait_for_redemption(self, tx_hash: str, timeout: int) -> RedemptionReceipt | None:
        """Wait for a redemption receipt and decode its payout events.

        Args:
            tx_hash: Transaction hash from ``submit_redemption``.
            timeout: Seconds to wait.

        Returns:
            Typed receipt, or ``None`` if still pending at the timeout.

        Raises:
            BlockchainError: When no RPC endpoint is reachable or the call fails.

        """
        w3 = await self._web3()
        return await _chain_call(
            f"wait for {tx_hash}", _ctf_redeemer.wait_for_receipt, w3, tx_hash, timeout
        )

    async def close(self) -> None:
        """Close the underlying HTTP clients."""
        await self._data_api.close()

    async def __aenter__(self) -> "PolymarketClient":
        """Enter the async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the async context manager and close connections."""
        await self.close()


async def _chain_call(action: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous web3 call in a thread, converting failures.

    Args:
        action: Human-readable description for error messages.
        fn: The callable to invoke.
        *args: Positional arguments forwarded to *fn*.
        **kwargs: Keyword arguments forwarded to *fn*.

    Returns:
        The result of *fn*.

    Raises:
        BlockchainError: When the RPC node or the chain rejects the call.

    """
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except (Web3Exception, ValueError, OSError) as exc:
        msg = f"Failed to {action}: {exc}"
        raise BlockchainError(msg) from exc


def _parse_order_book(token_id: str, raw: dict[str, Any]) -> OrderBook:
    """Convert a raw CLOB order book into a typed ``OrderBook``.

    Bids are sorted highest-first and asks lowest-first regardless of the
    order the CLOB returned them in.

    Args:
        token_id: CLOB token identifier.
        raw: Dictionary with ``bids`` and ``asks`` lists.

    Returns:
        Typed order book with spread and midpoint.

    """
    bids = tuple(
        sorted(
            (
                OrderLevel(price=_safe_decimal(b.get("price")), size=_safe_decimal(b.get("size")))
                for b in raw.get("bids", [])
            ),
            key=lambda level: level.price,
            reverse=True,
        )
    )
    asks = tuple(
        sorted(
            (
                OrderLevel(price=_safe_decimal(a.get("price")), size=_safe_decimal(a.get("size")))
                for a in raw.get("asks", [])
            ),
            key=lambda level: level.price,
        )
    )
    if bids and asks:
        spread = asks[0].price - bids[0].price
        midpoint = (asks[0].price + bids[0].price) / _TWO
    else:
        spread = ZERO
        midpoint = ZERO
    return OrderBook(token_id=token_id, bids=bids, asks=asks, spread=spread, midpoint=midpoint)


def _parse_placed_order(raw: dict[str, Any]) -> PlacedOrder:
    """Collapse a ``post_order`` response into a ``PlacedOrder``.

    Args:
        raw: Raw dictionary from the CLOB ``post_order`` call.

    Returns:
        Typed ``PlacedOrder``.

    """
    order_id = str(raw.get("orderID") or raw.get("orderId") or raw.get("id") or "")
    error = str(raw.get("errorMsg") or raw.get("error") or "")
    success = raw.get("success", True)
    accepted = bool(success) and not error and bool(order_id)
    if not accepted and not error:
        error = str(raw.get("raw") or "order rejected without message")
    return PlacedOrder(
        order_id=order_id,
        status=str(raw.get("status", "unknown")).lower(),
        accepted=accepted,
        error=error,
    )


def _parse_order_status(order_id: str, raw: dict[str, Any]) -> OrderStatus:
    """Convert a raw ``get_order`` dictionary into an ``OrderStatus``.

    Args:
        order_id: Identifier requested (used if the payload omits it).
        raw: Order dictionary from the CLOB.

    Returns:
        Typed ``OrderStatus``.

    """
    return OrderStatus(
        order_id=str(raw.get("id", order_id)),
        status=str(raw.get("status", "unknown")).lower(),
        original_size=_safe_decimal(raw.get("original_size", raw.get("size"))),
        size_matched=_safe_decimal(raw.get("size_matched", raw.get("filled"))),
        price=_safe_decimal(raw.get("price")),
    )


def _parse_position(raw: dict[str, Any], wallet: str) -> Position:
    """Convert a Data API position row into a ``Position``.

    Args:
        raw: Position dictionary from the Data API.
        wallet: Wallet the row was fetched for.

    Returns:
        Typed ``Position``.

    """
    return Position(
        condition_id=str(raw.get("conditionId", raw.get("condition_id", ""))),
        token_id=str(raw.get("asset", "")),
        outcome=str(raw.get("outcome", "")),
        outcome_index=int(raw.get("outcomeIndex", 0) or 0),
        size=_safe_decimal(raw.get("size")),
        current_value=_safe_decimal(raw.get("currentValue")),
        redeemable=bool(raw.get("redeemable", False)),
        title=str(raw.get("title", "")),
        wallet=str(raw.get("proxyWallet", wallet)),
    )


def _safe_decimal(value: Any) -> Decimal:
    """Convert a value to Decimal, returning zero for None/empty strings.

    Raise ``PolymarketAPIError`` for values that are present but
    cannot be parsed into a valid Decimal, rather than silently
    substituting zero for genuinely corrupt data.

    Args:
        value: Value to convert (string, float, int, or None).

    Returns:
        Decimal representation, or ``Decimal("0")`` for None/empty.

    Raises:
        PolymarketAPIError: If the value is non-empty but malformed.

    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return ZERO
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        msg = f"Cannot convert {value!r} to Decimal"
        raise PolymarketAPIError(msg=msg, status_code=0) from exc
