"""
paygate - payment-gated generation job pipeline.

A requester pays a fixed USDC price on-chain; the pipeline verifies the
transfer, runs the job (text or image) and notifies the counterparty.
"""

__version__ = "1.0.0"
