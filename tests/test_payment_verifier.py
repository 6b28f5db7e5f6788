"""Tests for on-chain payment verification."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from web3.exceptions import TransactionNotFound, Web3RPCError

from paygate.payments.chain import TRANSFER_SELECTOR, ChainGateway
from paygate.payments.verifier import PaymentVerifier
from paygate.pipeline.entities import RejectionReason
from paygate.pipeline.errors import GatewayUnavailableError

from .conftest import (
    OTHER_WALLET,
    PROVIDER,
    REQUESTER,
    TOKEN,
    FakeGateway,
    transfer_calldata,
    tx_hash,
)

PRICE = Decimal("0.50")
TX = tx_hash(42)


class TestAcceptance:
    """Valid transfers are accepted."""

    def test_exact_payment_accepted(self, gateway: FakeGateway, verifier: PaymentVerifier):
        gateway.add_transfer(TX, PROVIDER, PRICE)

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.accepted
        assert verdict.reason is None
        assert verdict.amount == Decimal("0.500000")
        assert verdict.block_number == 100

    def test_recipient_compare_is_case_insensitive(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE)

        assert verifier.verify(TX, PROVIDER.upper().replace("0X", "0x"), PRICE).accepted

    def test_within_tolerance_accepted(self, gateway, verifier):
        """price x 0.9995 is within 0.1%."""
        gateway.add_transfer(TX, PROVIDER, PRICE * Decimal("0.9995"))

        assert verifier.verify(TX, PROVIDER, PRICE).accepted

    def test_verification_is_idempotent(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE)

        first = verifier.verify(TX, PROVIDER, PRICE)
        second = verifier.verify(TX, PROVIDER, PRICE)

        assert first == second


class TestRejection:
    """Each failed check maps to its own reason."""

    def test_outside_tolerance_rejected(self, gateway, verifier):
        """price x 0.9980 is outside 0.1%."""
        gateway.add_transfer(TX, PROVIDER, PRICE * Decimal("0.9980"))

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert not verdict.accepted
        assert verdict.reason == RejectionReason.WRONG_AMOUNT

    def test_underpayment_rejected(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, Decimal("0.40"))

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.reason == RejectionReason.WRONG_AMOUNT
        assert verdict.amount == Decimal("0.400000")
        assert "expected 0.50" in verdict.detail

    def test_overpayment_beyond_tolerance_rejected(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, Decimal("0.60"))

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.WRONG_AMOUNT

    def test_unknown_transaction(self, verifier):
        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.reason == RejectionReason.NOT_FOUND

    def test_malformed_hash(self, gateway, verifier):
        verdict = verifier.verify("0x1234", PROVIDER, PRICE)

        assert verdict.reason == RejectionReason.NOT_FOUND
        assert gateway.calls == 0

    def test_unconfirmed(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE, confirmed=False)

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.NOT_CONFIRMED

    def test_reverted(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE, status=0)

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.EXECUTION_FAILED

    def test_wrong_contract(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE, token=OTHER_WALLET)

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.WRONG_CONTRACT

    def test_not_a_transfer(self, gateway, verifier):
        approve = bytes.fromhex("095ea7b3") + transfer_calldata(PROVIDER, PRICE)[4:]
        gateway.add_transfer(TX, PROVIDER, PRICE, data=approve)

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.NOT_A_TRANSFER

    def test_truncated_calldata(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE, data=TRANSFER_SELECTOR + b"\x00" * 10)

        assert verifier.verify(TX, PROVIDER, PRICE).reason == RejectionReason.NOT_A_TRANSFER

    def test_wrong_recipient(self, gateway, verifier):
        gateway.add_transfer(TX, OTHER_WALLET, PRICE)

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.reason == RejectionReason.WRONG_RECIPIENT
        assert OTHER_WALLET in verdict.detail


class TestGatewayRetries:
    """Transient gateway failures are retried with doubling backoff."""

    def test_recovers_after_transient_failure(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE)
        gateway.transient_failures = 2

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.accepted
        assert gateway.calls == 3
        assert verifier.sleeps == [0.5, 1.0]

    def test_exhausted_retries_is_not_found(self, gateway, verifier):
        gateway.add_transfer(TX, PROVIDER, PRICE)
        gateway.transient_failures = 3

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.reason == RejectionReason.NOT_FOUND
        assert "gateway unavailable" in verdict.detail
        assert gateway.calls == 3
        assert verifier.sleeps == [0.5, 1.0]

    def test_missing_transaction_not_retried(self, gateway, verifier):
        verifier.verify(TX, PROVIDER, PRICE)

        assert gateway.calls == 1
        assert verifier.sleeps == []

    def test_configurable_tolerance(self, gateway):
        strict = PaymentVerifier(gateway, token_address=TOKEN, tolerance=Decimal("0"))
        gateway.add_transfer(TX, PROVIDER, PRICE * Decimal("0.9995"))

        assert strict.verify(TX, PROVIDER, PRICE).reason == RejectionReason.WRONG_AMOUNT


class TestChainGateway:
    """ChainGateway normalizes web3 responses and errors."""

    def _gateway(self, eth: MagicMock) -> ChainGateway:
        w3 = MagicMock()
        w3.eth = eth
        return ChainGateway("https://rpc.example.com", web3=w3)

    def test_transaction_normalized(self):
        eth = MagicMock()
        eth.get_transaction.return_value = {
            "from": "0xAbC0000000000000000000000000000000000001",
            "to": TOKEN.upper().replace("0X", "0x"),
            "input": "0xa9059cbb" + "00" * 64,
            "blockNumber": 7,
        }

        tx = self._gateway(eth).get_transaction(TX)

        assert tx["to"] == TOKEN
        assert tx["from"] == "0xabc0000000000000000000000000000000000001"
        assert tx["input"][:4] == TRANSFER_SELECTOR
        assert tx["blockNumber"] == 7

    def test_not_found_returns_none(self):
        eth = MagicMock()
        eth.get_transaction.side_effect = TransactionNotFound("missing")
        eth.get_transaction_receipt.side_effect = TransactionNotFound("missing")
        gateway = self._gateway(eth)

        assert gateway.get_transaction(TX) is None
        assert gateway.get_receipt(TX) is None

    def test_transport_error_is_gateway_unavailable(self):
        eth = MagicMock()
        eth.get_transaction.side_effect = ConnectionError("refused")

        with pytest.raises(GatewayUnavailableError):
            self._gateway(eth).get_transaction(TX)

    def test_rpc_error_is_gateway_unavailable(self):
        eth = MagicMock()
        eth.get_transaction.side_effect = Web3RPCError("rate limit exceeded")
        eth.get_transaction_receipt.side_effect = Web3RPCError("rate limit exceeded")
        gateway = self._gateway(eth)

        with pytest.raises(GatewayUnavailableError, match="rate limit"):
            gateway.get_transaction(TX)
        with pytest.raises(GatewayUnavailableError, match="rate limit"):
            gateway.get_receipt(TX)

    def test_verifier_retries_rate_limited_node(self):
        """A JSON-RPC error response is retried like a dropped connection."""
        eth = MagicMock()
        eth.get_transaction.side_effect = [
            Web3RPCError("rate limit exceeded"),
            {
                "from": REQUESTER,
                "to": TOKEN,
                "input": transfer_calldata(PROVIDER, PRICE),
                "blockNumber": 9,
            },
        ]
        eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 9}
        sleeps: list[float] = []
        verifier = PaymentVerifier(self._gateway(eth), token_address=TOKEN, sleep=sleeps.append)

        verdict = verifier.verify(TX, PROVIDER, PRICE)

        assert verdict.accepted
        assert eth.get_transaction.call_count == 2
        assert sleeps == [0.5]
