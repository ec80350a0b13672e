"""Bridge to the untyped ``py-clob-client`` SDK.

No other module imports ``py_clob_client``.  Every call made here is
synchronous (the facade runs it in a worker thread) and returns plain
``dict``/``str`` values; SDK failures surface as ``PolymarketAPIError``
carrying the HTTP status, which the execution layer uses to tell
credential rejections and edge blocks apart from ordinary errors.
"""

import logging
from typing import Any, NamedTuple, cast

from eth_account import Account  # type: ignore[import-untyped]
from py_clob_client.client import ClobClient  # type: ignore[import-untyped]
from py_clob_client.clob_types import (  # type: ignore[import-untyped]
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.exceptions import PolyApiException  # type: ignore[import-untyped]

from updown_engine.clients.polymarket.exceptions import PolymarketAPIError

POLYGON_CHAIN_ID = 137
_SIGNATURE_POLY_PROXY = 1
_STATUS_UNKNOWN = 500
_STATUS_NOT_FOUND = 404
_DEFAULT_TICK = "0.01"
_ORDER_TYPES = {"GTC": OrderType.GTC, "GTD": OrderType.GTD, "FOK": OrderType.FOK}
_ASSET_TYPES = {"COLLATERAL": AssetType.COLLATERAL, "CONDITIONAL": AssetType.CONDITIONAL}

_logger = logging.getLogger(__name__)


class ApiCredentials(NamedTuple):
    """Level 2 CLOB credentials."""

    api_key: str
    api_secret: str
    api_passphrase: str


def _call(action: str, fn: Any, *args: Any, missing_ok: bool = False, **kwargs: Any) -> Any:
    """Invoke an SDK method, translating its failures.

    Args:
        action: What was attempted, used in the error message.
        fn: SDK callable.
        *args: Positional arguments for ``fn``.
        missing_ok: Return ``None`` instead of raising on HTTP 404.
        **kwargs: Keyword arguments for ``fn``.

    Returns:
        Whatever ``fn`` returned, or ``None`` for a tolerated 404.

    Raises:
        PolymarketAPIError: For any other failure.

    """
    try:
        return fn(*args, **kwargs)
    except PolyApiException as exc:
        status = int(getattr(exc, "status_code", None) or _STATUS_UNKNOWN)
        if missing_ok and status == _STATUS_NOT_FOUND:
            _logger.debug("CLOB returned 404 while trying to %s", action)
            return None
        detail = getattr(exc, "error_msg", None) or exc
        raise PolymarketAPIError(msg=f"Failed to {action}: {detail}", status_code=status) from exc
    except Exception as exc:
        raise PolymarketAPIError(
            msg=f"Failed to {action}: {exc}", status_code=_STATUS_UNKNOWN
        ) from exc


def _as_dict(result: Any) -> dict[str, Any] | None:
    return cast("dict[str, Any]", result) if isinstance(result, dict) else None


def create_clob_client(host: str) -> ClobClient:  # type: ignore[no-any-unimported]
    """Create a read-only CLOB client."""
    return ClobClient(host)  # type: ignore[no-any-return]


def derive_funder_address(private_key: str) -> str:
    """Return the checksummed EOA address of a private key."""
    return Account.from_key(private_key).address  # type: ignore[no-any-return]


def create_authenticated_clob_client(
    host: str,
    private_key: str,
    chain_id: int = POLYGON_CHAIN_ID,
    creds: tuple[str, str, str] | None = None,
    funder: str | None = None,
) -> ClobClient:  # type: ignore[no-any-unimported]
    """Create a signing CLOB client for a proxy-wallet account.

    Without ``creds`` the client can only sign (Level 1); call
    ``derive_api_creds`` before trading.

    Args:
        host: CLOB base URL.
        private_key: Hex signer key.
        chain_id: Polygon chain id.
        creds: ``(api_key, api_secret, api_passphrase)`` when already known.
        funder: Proxy wallet holding the funds; defaults to the signer EOA.

    Returns:
        The configured client.

    """
    api_creds = None if creds is None else ApiCreds(**ApiCredentials(*creds)._asdict())
    return ClobClient(  # type: ignore[no-any-return]
        host,
        chain_id=chain_id,
        key=private_key,
        creds=api_creds,
        signature_type=_SIGNATURE_POLY_PROXY,
        funder=funder or derive_funder_address(private_key),
    )


def derive_api_creds(client: Any) -> ApiCredentials:
    """Create or re-derive Level 2 credentials and install them on ``client``.

    Called lazily before the first trade and again after a 401.

    Raises:
        PolymarketAPIError: When the CLOB refuses to issue credentials.

    """
    raw = _call("derive API credentials", client.create_or_derive_api_creds)
    _call("install API credentials", client.set_api_creds, raw)
    return ApiCredentials(str(raw.api_key), str(raw.api_secret), str(raw.api_passphrase))


def _levels(levels: Any) -> list[dict[str, str]]:
    return [{"price": str(level.price), "size": str(level.size)} for level in levels or []]


def fetch_order_book(client: Any, token_id: str) -> dict[str, Any] | None:
    """Fetch a token's order book as ``{"bids": [...], "asks": [...]}``.

    The SDK answers with either a dict or an ``OrderBookSummary`` depending
    on its version; both are returned as a dict of price/size strings.

    Returns:
        The book, or ``None`` when the CLOB has none for the token.

    Raises:
        PolymarketAPIError: On any failure other than 404.

    """
    action = f"fetch order book for {token_id}"
    raw = _call(action, client.get_order_book, token_id, missing_ok=True)
    if raw is None:
        return None
    book = _as_dict(raw)
    if book is not None:
        return book
    return {
        "bids": _levels(getattr(raw, "bids", None)),
        "asks": _levels(getattr(raw, "asks", None)),
    }


def place_order(  # noqa: PLR0913
    client: Any,
    token_id: str,
    side: str,
    price: float,
    size: float,
    order_type: str = "GTC",
    tick_size: str = _DEFAULT_TICK,
) -> dict[str, Any]:
    """Sign and post a limit order.

    Args:
        client: Level 2 client.
        token_id: Outcome token to trade.
        side: ``"BUY"`` or ``"SELL"``.
        price: Limit price in (0, 1).
        size: Shares.
        order_type: ``"GTC"``, ``"GTD"`` or ``"FOK"``; unknown values post as GTC.
        tick_size: Market price increment used when rounding the signed order.

    Returns:
        The CLOB response, or ``{"raw": ...}`` when it was not a JSON object.

    Raises:
        PolymarketAPIError: When signing or posting fails.

    """
    signed = _call(
        f"sign {order_type} order",
        client.create_order,
        order_args=OrderArgs(token_id=token_id, price=price, size=size, side=side),
        options=PartialCreateOrderOptions(tick_size=tick_size),
    )
    result = _call(
        f"place {order_type} order",
        client.post_order,
        signed,
        orderType=_ORDER_TYPES.get(order_type.upper(), OrderType.GTC),
    )
    response = _as_dict(result)
    return response if response is not None else {"raw": str(result)}


def get_order(client: Any, order_id: str) -> dict[str, Any] | None:
    """Fetch one order, or ``None`` when the CLOB does not know it."""
    return _as_dict(_call(f"fetch order {order_id}", client.get_order, order_id, missing_ok=True))


def get_balance(client: Any, asset_type: str = "COLLATERAL") -> dict[str, Any]:
    """Fetch raw ``balance``/``allowance`` strings for an asset type.

    Raises:
        PolymarketAPIError: When the query fails.

    """
    params = BalanceAllowanceParams(  # type: ignore[reportArgumentType]
        asset_type=_ASSET_TYPES.get(asset_type, AssetType.CONDITIONAL)
    )
    return _call("fetch balance", client.get_balance_allowance, params=params)


def cancel_order(client: Any, order_id: str) -> dict[str, Any]:
    """Cancel an order; the response lists ``canceled`` and ``not_canceled`` ids.

    Raises:
        PolymarketAPIError: When the request fails.

    """
    return _call(f"cancel order {order_id}", client.cancel, order_id)
