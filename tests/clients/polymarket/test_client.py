"""Tests for the Polymarket client facade."""

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from updown_engine.clients.polymarket.client import (
    PolymarketClient,
    _parse_order_book,
    _parse_order_status,
    _parse_placed_order,
    _safe_decimal,
)
from updown_engine.clients.polymarket.exceptions import BlockchainError, PolymarketAPIError
from updown_engine.clients.polymarket.models import GasQuote, OrderRequest

_PRIVATE_KEY = "0x" + "11" * 32
_PROXY = "0xProxyWallet"
_SIGNER = "0xSignerEOA"
_TOKEN = "token123"
_ADAPTER = "updown_engine.clients.polymarket.client._clob_adapter"
_REDEEMER = "updown_engine.clients.polymarket.client._ctf_redeemer"


def _make_position_row(**overrides: Any) -> dict[str, Any]:
    """Create a Data API position row."""
    row: dict[str, Any] = {
        "conditionId": "0xcond",
        "asset": "tok-up",
        "outcome": "Up",
        "outcomeIndex": 0,
        "size": "12.5",
        "currentValue": "12.5",
        "redeemable": True,
        "title": "Bitcoin Up or Down",
        "proxyWallet": _PROXY,
    }
    row.update(overrides)
    return row


class TestParsers:
    """Tests for raw payload normalisation."""

    def test_order_book_sorted_with_spread(self) -> None:
        """Bids sort high-first, asks low-first, with spread and midpoint."""
        book = _parse_order_book(
            _TOKEN,
            {
                "bids": [{"price": "0.40", "size": "5"}, {"price": "0.42", "size": "3"}],
                "asks": [{"price": "0.47", "size": "2"}, {"price": "0.45", "size": "4"}],
            },
        )

        assert book.best_bid == Decimal("0.42")
        assert book.best_ask == Decimal("0.45")
        assert book.spread == Decimal("0.03")
        assert book.midpoint == Decimal("0.435")
        assert book.bid_depth == Decimal(8)
        assert book.ask_depth == Decimal(6)

    def test_one_sided_book(self) -> None:
        """A one-sided book has no best ask and zero spread."""
        book = _parse_order_book(_TOKEN, {"bids": [{"price": "0.40", "size": "5"}], "asks": []})

        assert book.best_ask is None
        assert book.spread == Decimal(0)

    def test_placed_order_accepted(self) -> None:
        """A success payload with an order id is accepted."""
        placed = _parse_placed_order({"success": True, "orderID": "oid", "status": "LIVE"})

        assert placed.accepted
        assert placed.order_id == "oid"
        assert placed.status == "live"

    def test_placed_order_error_message(self) -> None:
        """An error message marks the order as rejected."""
        placed = _parse_placed_order({"success": False, "errorMsg": "not enough balance"})

        assert not placed.accepted
        assert placed.error == "not enough balance"

    def test_placed_order_without_id(self) -> None:
        """A payload without an order id is rejected with a fallback message."""
        placed = _parse_placed_order({"raw": "<html>"})

        assert not placed.accepted
        assert placed.error == "<html>"

    def test_order_status(self) -> None:
        """Order sizes and status are normalised."""
        status = _parse_order_status(
            "oid",
            {"status": "MATCHED", "original_size": "10", "size_matched": "4", "price": "0.45"},
        )

        assert status.status == "matched"
        assert status.size_matched == Decimal(4)
        assert status.original_size == Decimal(10)

    def test_safe_decimal(self) -> None:
        """Empty values become zero and garbage raises."""
        assert _safe_decimal(None) == Decimal(0)
        assert _safe_decimal(" ") == Decimal(0)
        assert _safe_decimal(0.5) == Decimal("0.5")
        with pytest.raises(PolymarketAPIError, match="Cannot convert"):
            _safe_decimal("abc")


class TestPolymarketClient:
    """Test suite for the PolymarketClient facade."""

    @pytest.fixture
    def client(self) -> PolymarketClient:
        """Create an authenticated PolymarketClient with a mocked CLOB client."""
        with patch(f"{_ADAPTER}.create_authenticated_clob_client"):
            return PolymarketClient(private_key=_PRIVATE_KEY, funder_address=_PROXY)

    def test_read_only_client(self) -> None:
        """A client without a key is not authenticated."""
        with patch(f"{_ADAPTER}.create_clob_client"):
            client = PolymarketClient()
        assert not client.authenticated
        assert client.wallets() == []

    @pytest.mark.asyncio
    async def test_read_only_rejects_orders(self) -> None:
        """Placing an order without a key raises an auth error."""
        with patch(f"{_ADAPTER}.create_clob_client"):
            client = PolymarketClient()
        request = OrderRequest(token_id=_TOKEN, side="BUY", price=Decimal("0.5"), size=Decimal(5))
        with pytest.raises(PolymarketAPIError) as exc_info:
            await client.place_order(request)
        assert exc_info.value.is_unauthorized

    def test_wallets_proxy_first_deduplicated(self, client: PolymarketClient) -> None:
        """The proxy wallet comes first and the signer is added once."""
        with patch(f"{_ADAPTER}.derive_funder_address", return_value=_SIGNER):
            assert client.wallets() == [_PROXY, _SIGNER]
        with patch(f"{_ADAPTER}.derive_funder_address", return_value=_PROXY.lower()):
            assert client.wallets() == [_PROXY]

    @pytest.mark.asyncio
    async def test_get_positions_drops_empty(self, client: PolymarketClient) -> None:
        """Zero-size rows are dropped and values parsed as Decimal."""
        rows = [_make_position_row(), _make_position_row(conditionId="0xzero", size="0")]
        with patch.object(
            client._data_api,  # noqa: SLF001
            "get_positions",
            new=AsyncMock(return_value=rows),
        ):
            positions = await client.get_positions(_PROXY)

        assert len(positions) == 1
        assert positions[0].current_value == Decimal("12.5")
        assert positions[0].redeemable
        assert positions[0].wallet == _PROXY

    @pytest.mark.asyncio
    async def test_get_balance_scaled(self, client: PolymarketClient) -> None:
        """Balances are converted from 6-decimal units to USDC."""
        with patch(
            f"{_ADAPTER}.get_balance",
            return_value={"balance": "12345678", "allowance": "0"},
        ):
            balance = await client.get_balance()

        assert balance.balance == Decimal("12.345678")

    @pytest.mark.asyncio
    async def test_place_order_passes_floats(self, client: PolymarketClient) -> None:
        """Decimal order fields are passed to the adapter as floats."""
        place = MagicMock(return_value={"orderID": "oid", "status": "live"})
        request = OrderRequest(token_id=_TOKEN, side="BUY", price=Decimal("0.45"), size=Decimal(10))
        with patch(f"{_ADAPTER}.place_order", place):
            placed = await client.place_order(request)

        assert placed.accepted
        args = place.call_args.args
        assert args[1:] == (_TOKEN, "BUY", 0.45, 10.0, "GTC")

    @pytest.mark.asyncio
    async def test_get_order_book_missing(self, client: PolymarketClient) -> None:
        """A missing book is returned empty."""
        with patch(f"{_ADAPTER}.fetch_order_book", return_value=None):
            book = await client.get_order_book(_TOKEN)

        assert book.bids == ()
        assert book.best_bid is None

    @pytest.mark.asyncio
    async def test_chain_errors_converted(self, client: PolymarketClient) -> None:
        """web3 failures surface as BlockchainError."""
        quote = GasQuote(max_fee_per_gas=1, gas_limit=300_000, balance_wei=10**18)
        with (
            patch(f"{_REDEEMER}.connect", return_value=MagicMock()),
            patch(
                f"{_REDEEMER}.submit_redemption",
                side_effect=ValueError("nonce too low"),
            ),
            pytest.raises(BlockchainError, match="nonce too low"),
        ):
            await client.submit_redemption("0x" + "a" * 64, quote)

    @pytest.mark.asyncio
    async def test_connects_once(self, client: PolymarketClient) -> None:
        """The RPC connection is created lazily and reused."""
        connect = MagicMock(return_value=MagicMock())
        with (
            patch(f"{_REDEEMER}.connect", connect),
            patch(f"{_REDEEMER}.wait_for_receipt", return_value=None),
        ):
            assert await client.wait_for_redemption("0xtx", 1) is None
            assert await client.wait_for_redemption("0xtx", 1) is None

        connect.assert_called_once()

    @pytest.mark.asyncio
    async def test_ensure_api_creds_derives_once(self, client: PolymarketClient) -> None:
        """Credentials are derived on first use only."""
        derive = MagicMock(return_value=("key12345", "secret", "pass"))
        with patch(f"{_ADAPTER}.derive_api_creds", derive):
            await client.ensure_api_creds()
            await client.ensure_api_creds()

        derive.assert_called_once()
