"""Redeem winning conditional tokens via the Polymarket ProxyWalletFactory.

Call ``redeemPositions`` on the Gnosis Conditional Token Framework (CTF)
contract through the Polymarket ProxyWalletFactory's ``proxy()`` function,
wait for the receipt, and decode the ``PayoutRedemption`` events it emits.
Only a tiny amount of POL for gas is required in the signing EOA.

The ProxyWalletFactory routes calls based on ``msg.sender``, so the
signing EOA must be the owner of the proxy wallet.

All functions are synchronous; the client facade runs them in a worker
thread via ``asyncio.to_thread``.
"""

import logging
from decimal import Decimal
from typing import Any

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.types import Nonce, TxParams, Wei

from updown_engine.clients.polymarket.exceptions import BlockchainError
from updown_engine.clients.polymarket.models import GasQuote, PayoutEvent, RedemptionReceipt

logger = logging.getLogger(__name__)

# Polygon contract addresses
_CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
_USDC_E_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
_PROXY_WALLET_FACTORY = "0xaB45c5A4B0c941a2F231C04C3f49182e1A254052"
_PARENT_COLLECTION_ID = b"\x00" * 32

# Redeem both outcome slots of a binary market
_INDEX_SETS = [1, 2]

_CTF_ABI: list[dict[str, Any]] = [
    {
        "name": "redeemPositions",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "outputs": [],
    },
    {
        "name": "PayoutRedemption",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "redeemer", "type": "address", "indexed": True},
            {"name": "collateralToken", "type": "address", "indexed": True},
            {"name": "parentCollectionId", "type": "bytes32", "indexed": True},
            {"name": "conditionId", "type": "bytes32", "indexed": False},
            {"name": "indexSets", "type": "uint256[]", "indexed": False},
            {"name": "payout", "type": "uint256", "indexed": False},
        ],
    },
]

_FACTORY_PROXY_ABI: list[dict[str, Any]] = [
    {
        "name": "proxy",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "typeCode", "type": "uint8"},
                    {"name": "to", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "data", "type": "bytes"},
                ],
            },
        ],
        "outputs": [{"name": "", "type": "bytes[]"}],
    },
]

_PAYOUT_REDEMPTION_TOPIC = Web3.keccak(
    text="PayoutRedemption(address,address,bytes32,bytes32,uint256[],uint256)"
)
_CALL_TYPE_CODE = 1  # CALL (not DELEGATECALL)
_DEFAULT_GAS = 300_000
_TX_RECEIPT_TIMEOUT = 120
_GAS_PRICE_MULTIPLIER = 1.25  # 25% above estimated to ensure inclusion
_USDC_DECIMALS = Decimal("1e6")


def _condition_bytes(condition_id: str) -> bytes:
    """Convert a hex condition ID (with or without ``0x``) into 32 bytes."""
    cid_hex = condition_id[2:] if condition_id.startswith("0x") else condition_id
    return bytes.fromhex(cid_hex.zfill(64))


def _encode_redeem_calldata(condition_id: str) -> bytes:
    """Encode the ``redeemPositions`` function call for the CTF contract.

    Args:
        condition_id: Market condition ID as a hex string (with or without ``0x``).

    Returns:
        ABI-encoded calldata bytes.

    """
    ctf = Web3().eth.contract(abi=_CTF_ABI)
    return ctf.encode_abi(  # type: ignore[no-any-return]
        "redeemPositions",
        [
            Web3.to_checksum_address(_USDC_E_ADDRESS),
            _PARENT_COLLECTION_ID,
            _condition_bytes(condition_id),
            _INDEX_SETS,
        ],
    )


def connect(rpc_urls: list[str]) -> Web3:
    """Connect to the first reachable Polygon JSON-RPC endpoint.

    Args:
        rpc_urls: Endpoints to try in order.

    Returns:
        A connected ``Web3`` instance.

    Raises:
        BlockchainError: When no endpoint answers.

    """
    for url in rpc_urls:
        w3 = Web3(Web3.HTTPProvider(url))
        try:
            if w3.is_connected():
                return w3
        except (OSError, ValueError):
            logger.debug("RPC probe failed for %s", url, exc_info=True)
        logger.warning("Polygon RPC unreachable: %s", url)
    msg = f"Cannot connect to any Polygon RPC ({len(rpc_urls)} tried)"
    raise BlockchainError(msg)


def signer_address(w3: Web3, private_key: str) -> str:
    """Return the checksummed EOA address for a private key."""
    return str(w3.eth.account.from_key(private_key).address)


def quote_gas(w3: Web3, address: str, gas_limit: int = _DEFAULT_GAS) -> GasQuote:
    """Quote the worst-case gas cost of a redemption for a signer.

    Args:
        w3: Connected ``Web3`` instance.
        address: Signer EOA address.
        gas_limit: Gas units reserved per transaction.

    Returns:
        Gas quote comparing worst-case cost with the signer's POL balance.

    """
    max_fee = int(w3.eth.gas_price * _GAS_PRICE_MULTIPLIER)
    balance = int(w3.eth.get_balance(Web3.to_checksum_address(address)))
    return GasQuote(max_fee_per_gas=max_fee, gas_limit=gas_limit, balance_wei=balance)


def submit_redemption(
    w3: Web3,
    private_key: str,
    condition_id: str,
    *,
    gas_limit: int = _DEFAULT_GAS,
    gas_price: int,
) -> str:
    """Sign and broadcast one ``redeemPositions`` call through the proxy factory.

    Args:
        w3: Connected ``Web3`` instance.
        private_key: Hex-encoded private key of the proxy wallet owner.
        condition_id: Resolved market condition ID.
        gas_limit: Gas limit for the transaction.
        gas_price: Gas price in wei (already buffered by ``quote_gas``).

    Returns:
        Transaction hash as a ``0x`` hex string.

    """
    account = w3.eth.account.from_key(private_key)
    factory = w3.eth.contract(
        address=Web3.to_checksum_address(_PROXY_WALLET_FACTORY),
        abi=_FACTORY_PROXY_ABI,
    )
    proxy_call = (
        _CALL_TYPE_CODE,
        Web3.to_checksum_address(_CTF_ADDRESS),
        0,
        _encode_redeem_calldata(condition_id),
    )
    nonce = w3.eth.get_transaction_count(account.address, "pending")
    tx_params: TxParams = {
        "from": account.address,
        "gas": gas_limit,
        "gasPrice": Wei(gas_price),
        "nonce": Nonce(nonce),
    }
    tx = factory.functions.proxy([proxy_call]).build_transaction(tx_params)
    signed = w3.eth.account.sign_transaction(tx, private_key=private_key)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    logger.info("Submitted redemption for %s (tx: %s)", condition_id[:20], tx_hash.hex())
    return HexBytes(tx_hash).to_0x_hex()


def wait_for_receipt(
    w3: Web3,
    tx_hash: str,
    timeout: int = _TX_RECEIPT_TIMEOUT,
) -> RedemptionReceipt | None:
    """Wait for a redemption to be mined and decode its payout events.

    Args:
        w3: Connected ``Web3`` instance.
        tx_hash: Transaction hash returned by ``submit_redemption``.
        timeout: Seconds to wait before giving up.

    Returns:
        Typed receipt, or ``None`` when the transaction is still pending
        after ``timeout`` seconds.

    """
    try:
        receipt = w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)
    except TimeExhausted:
        logger.warning("Redemption %s still pending after %ds", tx_hash, timeout)
        return None
    return RedemptionReceipt(
        tx_hash=tx_hash,
        status=int(receipt["status"]),
        block_number=int(receipt["blockNumber"]),
        gas_used=int(receipt["gasUsed"]),
        effective_gas_price=int(receipt.get("effectiveGasPrice", 0)),
        payouts=parse_payout_events(w3, list(receipt["logs"])),
    )


def parse_payout_events(w3: Web3, logs: list[Any]) -> tuple[PayoutEvent, ...]:
    """Decode ``PayoutRedemption`` events emitted by the CTF contract.

    Logs from other contracts or with a different topic are ignored.

    Args:
        w3: ``Web3`` instance used for ABI decoding.
        logs: Raw receipt logs.

    Returns:
        Decoded payout events, payout converted from 6-decimal units to USDC.

    """
    ctf = w3.eth.contract(address=Web3.to_checksum_address(_CTF_ADDRESS), abi=_CTF_ABI)
    events: list[PayoutEvent] = []
    for log in logs:
        if str(log["address"]).lower() != _CTF_ADDRESS.lower():
            continue
        topics = log["topics"]
        if not topics or HexBytes(topics[0]) != _PAYOUT_REDEMPTION_TOPIC:
            continue
        decoded = ctf.events.PayoutRedemption().process_log(log)
        args = decoded["args"]
        events.append(
            PayoutEvent(
                redeemer=str(args["redeemer"]),
                condition_id=HexBytes(args["conditionId"]).to_0x_hex(),
                index_sets=tuple(int(i) for i in args["indexSets"]),
                payout=Decimal(int(args["payout"])) / _USDC_DECIMALS,
            )
        )
    return tuple(events)
