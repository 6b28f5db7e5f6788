"""Tests for model_provider module."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from paygate.pipeline.errors import ProviderError
from paygate.providers.model_provider import (
    AnthropicTextProvider,
    GenerationResult,
    ReplicateImageProvider,
)


def _message(*blocks, usage=(12, 34)):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=usage[0], output_tokens=usage[1]),
    )


def _text_block(text: str):
    return SimpleNamespace(type="text", text=text)


class TestGenerationResult:
    """Tests for GenerationResult dataclass."""

    def test_generation_result_creation(self):
        result = GenerationResult(
            output="Generated text",
            usage={"input_tokens": 100, "output_tokens": 50},
            provider="anthropic",
            model="claude-sonnet-4-20250514",
        )
        assert result.output == "Generated text"
        assert result.usage["input_tokens"] == 100


class TestAnthropicTextProvider:
    """Tests for AnthropicTextProvider with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=_message(_text_block('{"a": 1}')))
        return client

    @pytest.mark.asyncio
    async def test_generate(self, client):
        provider = AnthropicTextProvider("sk-test", "claude-test", max_tokens=512, client=client)

        result = await provider.generate("system", "user prompt")

        assert result.output == '{"a": 1}'
        assert result.provider == "anthropic"
        assert result.model == "claude-test"
        assert result.usage == {"input_tokens": 12, "output_tokens": 34}
        client.messages.create.assert_awaited_once_with(
            model="claude-test",
            max_tokens=512,
            system="system",
            messages=[{"role": "user", "content": "user prompt"}],
        )

    @pytest.mark.asyncio
    async def test_joins_text_blocks_only(self, client):
        client.messages.create.return_value = _message(
            _text_block('{"a": '),
            SimpleNamespace(type="tool_use", name="x"),
            _text_block("1}"),
        )
        provider = AnthropicTextProvider("sk-test", "claude-test", client=client)

        result = await provider.generate("s", "u")

        assert result.output == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_api_error_is_provider_error(self, client):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create.side_effect = anthropic.APIConnectionError(request=request)
        provider = AnthropicTextProvider("sk-test", "claude-test", client=client)

        with pytest.raises(ProviderError, match="Anthropic API error"):
            await provider.generate("s", "u")

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        provider = AnthropicTextProvider(None, "claude-test")

        with pytest.raises(ProviderError, match="ANTHROPIC_API_KEY"):
            await provider.generate("s", "u")

    def test_provider_name(self):
        assert AnthropicTextProvider("k", "m").provider_name == "anthropic"


class ReplicateBackend:
    """Scripted Replicate API for httpx.MockTransport."""

    def __init__(self, create: dict, polls: list = None, create_status: int = 201):
        self.create = create
        self.polls = list(polls or [])
        self.create_status = create_status
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return httpx.Response(self.create_status, json=self.create)
        return httpx.Response(200, json=self.polls.pop(0))


class TestReplicateImageProvider:
    """Tests for ReplicateImageProvider against a mocked API."""

    def _provider(self, backend: ReplicateBackend) -> ReplicateImageProvider:
        return ReplicateImageProvider(
            "r8_test", base_url="https://replicate.test/v1", poll_interval=0, transport=backend.transport
        )

    @pytest.mark.asyncio
    async def test_immediate_result(self):
        backend = ReplicateBackend(
            {"id": "p1", "status": "succeeded", "output": ["https://img/1.png"]}
        )

        result = await self._provider(backend).generate(
            "black-forest-labs/flux-schnell", "a lighthouse", {"num_outputs": 1}
        )

        assert result.output == ["https://img/1.png"]
        assert result.provider == "replicate"
        [request] = backend.requests
        assert str(request.url) == "https://replicate.test/v1/models/black-forest-labs/flux-schnell/predictions"
        assert request.headers["Authorization"] == "Bearer r8_test"
        assert request.headers["Prefer"] == "wait"
        assert json.loads(request.content) == {"input": {"prompt": "a lighthouse", "num_outputs": 1}}

    @pytest.mark.asyncio
    async def test_versioned_model(self):
        backend = ReplicateBackend({"id": "p2", "status": "succeeded", "output": "https://img/2.png"})

        await self._provider(backend).generate("stability-ai/sdxl:abc123", "a fox")

        [request] = backend.requests
        assert str(request.url) == "https://replicate.test/v1/predictions"
        assert json.loads(request.content) == {"version": "abc123", "input": {"prompt": "a fox"}}

    @pytest.mark.asyncio
    async def test_polls_until_terminal(self):
        poll_url = "https://replicate.test/v1/predictions/p3"
        backend = ReplicateBackend(
            {"id": "p3", "status": "starting", "urls": {"get": poll_url}},
            polls=[
                {"id": "p3", "status": "processing", "urls": {"get": poll_url}},
                {"id": "p3", "status": "succeeded", "output": ["https://img/3.png"]},
            ],
        )

        result = await self._provider(backend).generate("owner/model", "x")

        assert result.output == ["https://img/3.png"]
        assert [r.method for r in backend.requests] == ["POST", "GET", "GET"]

    @pytest.mark.asyncio
    async def test_failed_prediction(self):
        backend = ReplicateBackend({"id": "p4", "status": "failed", "error": "NSFW content"})

        with pytest.raises(ProviderError, match="NSFW content"):
            await self._provider(backend).generate("owner/model", "x")

    @pytest.mark.asyncio
    async def test_http_error(self):
        backend = ReplicateBackend({"detail": "Invalid token"}, create_status=401)

        with pytest.raises(ProviderError, match="HTTP 401"):
            await self._provider(backend).generate("owner/model", "x")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        provider = ReplicateImageProvider("r8_test", transport=httpx.MockTransport(refuse))

        with pytest.raises(ProviderError, match="request error"):
            await provider.generate("owner/model", "x")

    @pytest.mark.asyncio
    async def test_missing_token(self):
        with pytest.raises(ProviderError, match="REPLICATE_API_TOKEN"):
            await ReplicateImageProvider(None).generate("owner/model", "x")
