"""
Payment claim verification.

Checks a claimed transaction hash against the chain: the transaction must
exist, be confirmed and successful, call the configured token contract's
transfer(address,uint256), pay the expected recipient, and move the
expected amount within a relative tolerance.
"""

import logging
import re
import time
from decimal import Decimal
from typing import Callable, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from paygate.pipeline.entities import RejectionReason, VerificationVerdict
from paygate.pipeline.errors import GatewayUnavailableError

from .chain import TRANSFER_SELECTOR, ChainGateway

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.001")
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.5

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


class PaymentVerifier:
    """
    Stateless verifier; calling verify twice yields the same verdict.

    Network calls are blocking (web3 HTTP provider); async callers should
    run verify in a worker thread.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        token_address: str,
        decimals: int = 6,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.token_address = token_address.lower()
        self.decimals = decimals
        self.tolerance = Decimal(tolerance)
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self._sleep = sleep

    def _fetch(self, getter: Callable[[str], Optional[dict]], tx_hash: str) -> Optional[dict]:
        """Call a gateway getter, retrying transient failures with doubling backoff."""
        last_error: Optional[GatewayUnavailableError] = None

        for attempt in range(self.max_attempts):
            try:
                return getter(tx_hash)
            except GatewayUnavailableError as e:
                last_error = e
                logger.warning(
                    f"[Verifier] Gateway error for {tx_hash} "
                    f"(attempt {attempt + 1}/{self.max_attempts}): {e}"
                )

            if attempt < self.max_attempts - 1:
                self._sleep(self.backoff * (2 ** attempt))

        raise last_error

    def to_token_units(self, raw_amount: int) -> Decimal:
        """Convert base units to a token amount."""
        return Decimal(raw_amount).scaleb(-self.decimals)

    def amount_matches(self, actual: Decimal, expected: Decimal) -> bool:
        """|actual - expected| <= expected * tolerance"""
        return abs(actual - expected) <= expected * self.tolerance

    def verify(
        self,
        tx_hash: str,
        expected_recipient: str,
        expected_amount: Decimal,
    ) -> VerificationVerdict:
        """
        Verify a payment claim.

        Args:
            tx_hash: Claimed transaction hash (0x + 64 hex chars)
            expected_recipient: Address that must receive the transfer
            expected_amount: Token amount (not base units) the job costs

        Returns:
            VerificationVerdict (accepted, or rejected with a reason)
        """
        verdict = self._verify(tx_hash, expected_recipient, Decimal(expected_amount))
        if verdict.accepted:
            logger.info(
                f"[Verifier] Accepted {tx_hash}: {verdict.amount} from {verdict.sender} "
                f"(block {verdict.block_number})"
            )
        else:
            logger.info(f"[Verifier] Rejected {tx_hash}: {verdict.reason.value} ({verdict.detail})")
        return verdict

    def _verify(
        self,
        tx_hash: str,
        expected_recipient: str,
        expected_amount: Decimal,
    ) -> VerificationVerdict:
        if not TX_HASH_PATTERN.match(tx_hash or ""):
            return VerificationVerdict.reject(
                RejectionReason.NOT_FOUND, f"malformed transaction hash: {tx_hash!r}"
            )

        try:
            tx = self._fetch(self.gateway.get_transaction, tx_hash)
        except GatewayUnavailableError as e:
            return VerificationVerdict.reject(
                RejectionReason.NOT_FOUND, f"gateway unavailable after {self.max_attempts} attempts: {e}"
            )

        if tx is None:
            return VerificationVerdict.reject(RejectionReason.NOT_FOUND, "transaction not found")

        try:
            receipt = self._fetch(self.gateway.get_receipt, tx_hash)
        except GatewayUnavailableError as e:
            return VerificationVerdict.reject(
                RejectionReason.NOT_FOUND, f"gateway unavailable after {self.max_attempts} attempts: {e}"
            )

        if receipt is None:
            return VerificationVerdict.reject(
                RejectionReason.NOT_CONFIRMED, "transaction not yet confirmed; retry later"
            )

        if receipt.get("status") != 1:
            return VerificationVerdict.reject(RejectionReason.EXECUTION_FAILED, "transaction reverted")

        if (tx.get("to") or "").lower() != self.token_address:
            return VerificationVerdict.reject(
                RejectionReason.WRONG_CONTRACT,
                f"expected token {self.token_address}, got {tx.get('to') or 'none'}",
            )

        data = tx.get("input") or b""
        if data[:4] != TRANSFER_SELECTOR:
            return VerificationVerdict.reject(
                RejectionReason.NOT_A_TRANSFER, "call data is not transfer(address,uint256)"
            )

        try:
            recipient, raw_amount = decode(["address", "uint256"], data[4:])
        except DecodingError as e:
            return VerificationVerdict.reject(
                RejectionReason.NOT_A_TRANSFER, f"could not decode transfer arguments: {e}"
            )

        recipient = recipient.lower()
        if recipient != expected_recipient.lower():
            return VerificationVerdict.reject(
                RejectionReason.WRONG_RECIPIENT,
                f"expected recipient {expected_recipient.lower()}, got {recipient}",
            )

        amount = self.to_token_units(raw_amount)
        if not self.amount_matches(amount, expected_amount):
            return VerificationVerdict.reject(
                RejectionReason.WRONG_AMOUNT,
                f"expected {expected_amount}, got {amount}",
                amount=amount,
                sender=tx.get("from"),
            )

        return VerificationVerdict.accept(
            amount=amount,
            sender=tx.get("from"),
            block_number=receipt.get("blockNumber") or tx.get("blockNumber"),
        )
