"""
Blockchain RPC gateway.

Thin read-only wrapper around a web3 HTTP provider. Transactions and
receipts come back as plain dicts so the verifier does not depend on
web3's attribute types. Transport failures and JSON-RPC error
responses (rate limits, node timeouts) surface as
GatewayUnavailableError so the verifier retries them.
"""

import logging
from typing import Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from paygate.pipeline.errors import GatewayUnavailableError

logger = logging.getLogger(__name__)

# ERC-20 transfer(address,uint256)
TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")


def _to_bytes(value) -> bytes:
    """Normalize call data (HexBytes, bytes or 0x-prefixed str) to bytes."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


class ChainGateway:
    """
    Read-only access to transactions and receipts.

    Both getters return None when the node does not know the
    transaction (or has no receipt for it yet).
    """

    def __init__(self, rpc_url: str, timeout: float = 10.0, web3: Optional[Web3] = None):
        """
        Args:
            rpc_url: JSON-RPC endpoint URL
            timeout: Per-request timeout in seconds
            web3: Preconfigured Web3 instance (overrides rpc_url)
        """
        self.rpc_url = rpc_url
        self.w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        """
        Fetch a transaction.

        Returns:
            {"hash", "from", "to", "input", "blockNumber"} or None

        Raises:
            GatewayUnavailableError: On network errors, timeouts or RPC errors
        """
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except (OSError, Web3Exception) as e:
            raise GatewayUnavailableError(f"RPC error fetching transaction: {e}") from e

        return {
            "hash": tx_hash,
            "from": (tx.get("from") or "").lower(),
            "to": (tx.get("to") or "").lower(),
            "input": _to_bytes(tx.get("input")),
            "blockNumber": tx.get("blockNumber"),
        }

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        """
        Fetch a transaction receipt.

        Returns:
            {"status", "blockNumber"} or None while unconfirmed

        Raises:
            GatewayUnavailableError: On network errors, timeouts or RPC errors
        """
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (OSError, Web3Exception) as e:
            raise GatewayUnavailableError(f"RPC error fetching receipt: {e}") from e

        return {
            "status": receipt.get("status"),
            "blockNumber": receipt.get("blockNumber"),
        }
