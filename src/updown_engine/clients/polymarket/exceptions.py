"""Exception hierarchy for Polymarket client errors.

A base exception class with a specialised API error that carries status
code and message attributes, plus a chain error for Polygon RPC failures.
"""

_HTTP_UNAUTHORIZED = 401
_HTTP_FORBIDDEN = 403
_BLOCK_SIGNATURES = ("cloudflare", "blocked", "attention required")


class PolymarketError(Exception):
    """Base exception for all Polymarket client errors."""


class PolymarketAPIError(PolymarketError):
    """Error returned by a Polymarket API call.

    Carry a human-readable message and an HTTP status code so callers
    can distinguish transient failures, auth failures, and edge-protection
    blocks from client errors.

    Args:
        msg: Human-readable description of the error.
        status_code: HTTP status code from the API response.

    """

    def __init__(self, msg: str, status_code: int) -> None:
        """Initialize Polymarket API error.

        Args:
            msg: Human-readable description of the error.
            status_code: HTTP status code from the API response.

        """
        super().__init__(f"[{status_code}] {msg}")
        self.msg = msg
        self.status_code = status_code

    @property
    def is_blocked(self) -> bool:
        """Return True when the response looks like an edge-protection block."""
        text = self.msg.lower()
        if self.status_code == _HTTP_FORBIDDEN and "<html" in text:
            return True
        return any(sig in text for sig in _BLOCK_SIGNATURES)

    @property
    def is_unauthorized(self) -> bool:
        """Return True for credential rejections that are not edge blocks."""
        if self.is_blocked:
            return False
        if self.status_code in (_HTTP_UNAUTHORIZED, _HTTP_FORBIDDEN):
            return True
        return "unauthorized" in self.msg.lower()


class BlockchainError(PolymarketError):
    """Error raised when a Polygon RPC call or on-chain transaction fails."""
