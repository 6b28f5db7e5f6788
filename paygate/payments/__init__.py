"""
On-chain payment verification.
"""

from .chain import ChainGateway, TRANSFER_SELECTOR
from .verifier import PaymentVerifier

__all__ = ["ChainGateway", "PaymentVerifier", "TRANSFER_SELECTOR"]
