"""Async HTTP client for the Polymarket Data API positions feed.

The Data API (``https://data-api.polymarket.com``) reports every position
a wallet holds, including whether it is redeemable.  The endpoint is
cursor-paginated and has answered both as a bare JSON list and as a
``{"positions": [...], "next_cursor": "..."}`` envelope; both shapes are
accepted.
"""

import logging
from typing import Any, cast

import httpx

from updown_engine.clients.polymarket.exceptions import PolymarketAPIError

logger = logging.getLogger(__name__)

_HTTP_BAD_REQUEST = 400
_PAGE_LIMIT = 500
_MAX_PAGES = 10


class DataApiClient:
    """Async client for per-wallet position queries.

    Args:
        base_url: Base URL for the Data API.
        timeout: Request timeout in seconds.

    """

    BASE_URL = "https://data-api.polymarket.com"

    def __init__(self, base_url: str = BASE_URL, timeout: float = 30.0) -> None:
        """Initialize the Data API client.

        Args:
            base_url: Base URL for the Data API.
            timeout: Request timeout in seconds.

        """
        self.base_url = base_url.rstrip("/")
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def get_positions(self, wallet: str) -> list[dict[str, Any]]:
        """Fetch all positions for a wallet, following the cursor to exhaustion.

        Pagination stops when the API returns no cursor, repeats a cursor,
        returns an empty page, or after 10 pages.

        Args:
            wallet: Wallet address to query.

        Returns:
            Raw position dictionaries across all pages.

        Raises:
            PolymarketAPIError: When a page request fails.

        """
        positions: list[dict[str, Any]] = []
        cursor: str | None = None
        seen: set[str] = set()
        for _ in range(_MAX_PAGES):
            params: dict[str, str | int] = {
                "user": wallet,
                "sizeThreshold": 0,
                "limit": _PAGE_LIMIT,
            }
            if cursor:
                params["cursor"] = cursor
            page, next_cursor = _split_page(await self._get("/positions", params=params))
            if not page:
                break
            positions.extend(page)
            if not next_cursor or next_cursor in seen:
                break
            seen.add(next_cursor)
            cursor = next_cursor
        logger.debug("Fetched %d positions for %s", len(positions), wallet)
        return positions

    async def _get(self, path: str, params: dict[str, str | int]) -> Any:
        """Send a GET request and return the decoded JSON body.

        Args:
            path: API path relative to the base URL.
            params: Query parameters.

        Returns:
            Decoded JSON payload.

        Raises:
            PolymarketAPIError: On transport errors or HTTP error status.

        """
        try:
            response = await self._http_client.get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise PolymarketAPIError(
                msg=f"Data API request failed: {exc}",
                status_code=0,
            ) from exc

        if response.status_code >= _HTTP_BAD_REQUEST:
            raise PolymarketAPIError(
                msg=f"Data API error: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http_client.aclose()


def _split_page(payload: Any) -> tuple[list[dict[str, Any]], str | None]:
    """Split a positions response into its rows and the next cursor.

    Args:
        payload: Decoded JSON body (list or envelope dict).

    Returns:
        Tuple of ``(rows, next_cursor)``.

    """
    if isinstance(payload, list):
        rows = cast("list[Any]", payload)
        return [cast("dict[str, Any]", r) for r in rows if isinstance(r, dict)], None
    if isinstance(payload, dict):
        envelope = cast("dict[str, Any]", payload)
        rows = cast("list[Any]", envelope.get("positions") or [])
        cursor = envelope.get("next_cursor") or envelope.get("nextCursor")
        return (
            [cast("dict[str, Any]", r) for r in rows if isinstance(r, dict)],
            str(cursor) if cursor else None,
        )
    return [], None
