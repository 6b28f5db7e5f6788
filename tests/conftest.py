"""
Pytest configuration and shared fixtures.

Provides in-process doubles for the three external systems:
- FakeGateway: blockchain RPC (transactions and receipts in dicts)
- FakeTextProvider / FakeImageProvider: generation backends
- RecordingTransport: httpx MockTransport for webhook receivers
"""

import asyncio
import os
from decimal import Decimal
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from eth_abi import encode

from paygate.config import BASE_USDC_ADDRESS
from paygate.infra.webhook import WebhookNotifier
from paygate.payments.chain import TRANSFER_SELECTOR
from paygate.payments.verifier import PaymentVerifier
from paygate.pipeline.catalog import get_entry
from paygate.pipeline.entities import Job, JobState, WebhookEndpoint
from paygate.pipeline.errors import GatewayUnavailableError
from paygate.pipeline.orchestrator import JobOrchestrator
from paygate.pipeline.persistence import JobStore
from paygate.providers.dispatcher import ProviderDispatcher
from paygate.providers.model_provider import GenerationResult, ImageProvider, TextProvider

TOKEN = BASE_USDC_ADDRESS.lower()
REQUESTER = "0x" + "11" * 20
PROVIDER = "0x" + "22" * 20
OTHER_WALLET = "0x" + "33" * 20
WEBHOOK_URL = "https://provider.example.com/hooks/paygate"


def tx_hash(n: int) -> str:
    """Deterministic 0x-prefixed 32-byte transaction hash."""
    return "0x" + f"{n:064x}"


def transfer_calldata(recipient: str, amount: Decimal, decimals: int = 6) -> bytes:
    """ERC-20 transfer(address,uint256) call data for a token amount."""
    raw = int((Decimal(amount) * (Decimal(10) ** decimals)).to_integral_value())
    return TRANSFER_SELECTOR + encode(["address", "uint256"], [recipient, raw])


# =============================================================================
# Doubles
# =============================================================================


class FakeGateway:
    """In-memory stand-in for ChainGateway."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.transient_failures = 0
        self.calls = 0

    def add_transfer(
        self,
        hash_: str,
        recipient: str,
        amount: Decimal,
        token: str = TOKEN,
        status: int = 1,
        sender: str = REQUESTER,
        confirmed: bool = True,
        data: Optional[bytes] = None,
    ) -> None:
        self.transactions[hash_] = {
            "hash": hash_,
            "from": sender,
            "to": token,
            "input": data if data is not None else transfer_calldata(recipient, amount),
            "blockNumber": 100,
        }
        if confirmed:
            self.receipts[hash_] = {"status": status, "blockNumber": 100}

    def get_transaction(self, hash_: str) -> Optional[dict]:
        self.calls += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise GatewayUnavailableError("connection reset")
        return self.transactions.get(hash_)

    def get_receipt(self, hash_: str) -> Optional[dict]:
        return self.receipts.get(hash_)


class FakeTextProvider(TextProvider):
    """Returns a canned response, optionally after a delay or with an error."""

    def __init__(self, response: str = '{"ideas": [{"angle": "a", "idea": "b", "why": "c"}]}'):
        self.response = response
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.calls: list[tuple[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "fake-text"

    async def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult:
        self.calls.append((system_prompt, user_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(output=self.response, usage=None, provider="fake-text", model="fake")


class FakeImageProvider(ImageProvider):
    """Returns canned output for any model."""

    def __init__(self, output: Any = "https://img.example.com/1.png"):
        self.output = output
        self.error: Optional[Exception] = None
        self.calls: list[tuple[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "fake-image"

    async def generate(self, model, prompt, options=None) -> GenerationResult:
        self.calls.append((model, prompt))
        if self.error is not None:
            raise self.error
        return GenerationResult(output=self.output, usage=None, provider="fake-image", model=model)


class RecordingTransport:
    """
    httpx MockTransport that records requests.

    responses is consumed one per request; the last entry repeats. An
    entry is a status code or an exception class to raise.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [200])
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, type) and issubclass(item, Exception):
            raise item("simulated failure", request=request)
        return httpx.Response(item, text="ok" if item < 300 else "error")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="function")
def reset_auth_module():
    """
    Reset auth module state before each test.

    This ensures tests run with API_AUTH_ENABLED=false by default,
    unless the test explicitly sets it otherwise.
    """
    original_auth_enabled = os.environ.get("API_AUTH_ENABLED")
    original_api_key = os.environ.get("API_KEY")

    os.environ["API_AUTH_ENABLED"] = "false"

    yield

    if original_auth_enabled is not None:
        os.environ["API_AUTH_ENABLED"] = original_auth_enabled
    elif "API_AUTH_ENABLED" in os.environ:
        del os.environ["API_AUTH_ENABLED"]

    if original_api_key is not None:
        os.environ["API_KEY"] = original_api_key
    elif "API_KEY" in os.environ:
        del os.environ["API_KEY"]

    import importlib
    import paygate.api.dependencies.auth as auth_module
    importlib.reload(auth_module)


@pytest.fixture
def store(tmp_path) -> JobStore:
    """Fresh JobStore on a temporary database file."""
    return JobStore(tmp_path / "paygate.db")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def verifier(gateway: FakeGateway) -> PaymentVerifier:
    """Verifier over the fake gateway; backoff sleeps are recorded, not slept."""
    sleeps: list[float] = []
    v = PaymentVerifier(gateway, token_address=TOKEN, sleep=sleeps.append)
    v.sleeps = sleeps
    return v


@pytest.fixture
def text_provider() -> FakeTextProvider:
    return FakeTextProvider()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def dispatcher(text_provider, image_provider) -> ProviderDispatcher:
    return ProviderDispatcher(text_provider, image_provider, text_timeout=0.5, image_timeout=0.5)


@pytest.fixture
def webhook_receiver() -> RecordingTransport:
    return RecordingTransport([200])


@pytest.fixture
def notifier(store, webhook_receiver) -> WebhookNotifier:
    """Notifier posting to the recording transport; backoff sleeps are mocked."""
    return WebhookNotifier(store, transport=webhook_receiver.transport, sleep=AsyncMock())


@pytest.fixture
def orchestrator(store, verifier, dispatcher, notifier) -> JobOrchestrator:
    return JobOrchestrator(
        store=store,
        verifier=verifier,
        dispatcher=dispatcher,
        notifier=notifier,
        platform_wallet=PROVIDER,
    )


_TX_COUNTER = iter(range(10_000, 1_000_000))


@pytest.fixture
def create_job(store: JobStore) -> Callable:
    """
    Factory fixture for creating jobs.

    Returns a function that creates a job and walks it through the
    store's transitions up to the requested state.
    """

    def _create(
        service_key: str = "concept",
        input_data: dict = None,
        state: JobState = JobState.PENDING,
        provider: str = PROVIDER,
        price: Decimal = None,
    ) -> Job:
        job = Job.create(
            service_key=service_key,
            requester=REQUESTER,
            provider=provider,
            input_data=input_data or {"prompt": "Eco-friendly water bottle launch"},
            price=price if price is not None else get_entry(service_key).price,
        )
        job = store.create_job(job)

        if state == JobState.PENDING:
            return job

        job = store.mark_paid(job.job_id, tx_hash(next(_TX_COUNTER)))
        if state == JobState.PAID:
            return job

        job = store.mark_in_progress(job.job_id)
        if state == JobState.IN_PROGRESS:
            return job

        if state == JobState.COMPLETED:
            return store.mark_completed(job.job_id, {"result": "ok"})

        return store.mark_failed(job.job_id, "ProviderError", "boom")

    return _create


@pytest.fixture
def register_remote(orchestrator) -> Callable:
    """Factory fixture registering PROVIDER as a remote fulfiller."""

    def _register(events=None, remote_fulfillment: bool = True) -> WebhookEndpoint:
        return orchestrator.register_webhook(
            provider=PROVIDER,
            url=WEBHOOK_URL,
            events=events,
            remote_fulfillment=remote_fulfillment,
            operator=True,
        )

    return _register
