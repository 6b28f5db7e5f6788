"""Tests for provider dispatch and output parsing."""

import pytest

from paygate.pipeline.entities import FulfillmentKind, ImageResult, Job, TextResult
from paygate.pipeline.errors import (
    InvalidInputError,
    MalformedOutputError,
    ProviderError,
    ProviderTimeoutError,
    UnknownServiceError,
)
from paygate.providers.dispatcher import (
    extract_prompt,
    normalize_image_output,
    parse_text_output,
)

from .conftest import PROVIDER, REQUESTER


def _job(service_key: str = "brainstorm", input_data: dict = None) -> Job:
    return Job.create(
        service_key=service_key,
        requester=REQUESTER,
        provider=PROVIDER,
        input_data=input_data if input_data is not None else {"prompt": "reusable bottles"},
        price="0.10",
    )


class TestParseTextOutput:
    """Text output must be exactly one JSON object."""

    def test_plain_object(self):
        assert parse_text_output('{"a": 1}') == {"a": 1}

    def test_fenced_object(self):
        assert parse_text_output('```json\n{"a": 1}\n```') == {"a": 1}

    def test_bare_fence(self):
        assert parse_text_output('```\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    @pytest.mark.parametrize(
        "text",
        [
            '{"a": 1}{"b": 2}',
            '{"score": NaN}',
            '{"a": Infinity}',
            '{"a": [-Infinity]}',
            "[1, 2, 3]",
            '"just a string"',
            "Here you go: {\"a\": 1}",
            "",
            "   ",
            None,
        ],
    )
    def test_rejected(self, text):
        with pytest.raises(MalformedOutputError):
            parse_text_output(text)

    def test_malformed_is_provider_error(self):
        with pytest.raises(ProviderError):
            parse_text_output("not json")


class TestExtractPrompt:
    """Prompt derivation from job input."""

    def test_prompt_key(self):
        assert extract_prompt(FulfillmentKind.TEXT, {"prompt": "  hello "}) == "hello"

    def test_input_key_fallback(self):
        assert extract_prompt(FulfillmentKind.TEXT, {"input": "topic"}) == "topic"

    def test_text_serializes_structured_input(self):
        assert extract_prompt(FulfillmentKind.TEXT, {"brand": "Acme"}) == '{"brand": "Acme"}'

    def test_text_empty_input_rejected(self):
        with pytest.raises(InvalidInputError):
            extract_prompt(FulfillmentKind.TEXT, {})

    def test_image_requires_prompt(self):
        with pytest.raises(InvalidInputError):
            extract_prompt(FulfillmentKind.IMAGE, {"style": "noir"})


class TestNormalizeImageOutput:
    def test_single_url(self):
        assert normalize_image_output("https://x/1.png") == ["https://x/1.png"]

    def test_list(self):
        assert normalize_image_output(["https://x/1.png", None, "https://x/2.png"]) == [
            "https://x/1.png",
            "https://x/2.png",
        ]

    @pytest.mark.parametrize("output", [None, "", [], [None]])
    def test_empty_rejected(self, output):
        with pytest.raises(MalformedOutputError):
            normalize_image_output(output)


class TestDispatch:
    """ProviderDispatcher routes by catalog kind."""

    @pytest.mark.asyncio
    async def test_text_job(self, dispatcher, text_provider):
        result = await dispatcher.dispatch(_job())

        assert isinstance(result, TextResult)
        assert result.to_payload() == {"ideas": [{"angle": "a", "idea": "b", "why": "c"}]}
        system_prompt, user_prompt = text_provider.calls[0]
        assert "5 creative ideas" in system_prompt
        assert user_prompt == "reusable bottles"

    @pytest.mark.asyncio
    async def test_text_job_with_fenced_response(self, dispatcher, text_provider):
        text_provider.response = '```json\n{"concept": "x"}\n```'

        result = await dispatcher.dispatch(_job("concept"))

        assert result.data == {"concept": "x"}

    @pytest.mark.asyncio
    async def test_text_job_malformed(self, dispatcher, text_provider):
        text_provider.response = '{"a": 1}{"b": 2}'

        with pytest.raises(MalformedOutputError):
            await dispatcher.dispatch(_job())

    @pytest.mark.asyncio
    async def test_text_timeout(self, dispatcher, text_provider):
        text_provider.delay = 1.0

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await dispatcher.dispatch(_job())

        assert exc_info.value.code == "TimeoutError"
        assert exc_info.value.timeout == 0.5

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, dispatcher, text_provider):
        text_provider.error = ProviderError("rate limited")

        with pytest.raises(ProviderError, match="rate limited"):
            await dispatcher.dispatch(_job())

    @pytest.mark.asyncio
    async def test_image_job(self, dispatcher, image_provider):
        result = await dispatcher.dispatch(_job("image", {"prompt": "a lighthouse at dusk"}))

        assert isinstance(result, ImageResult)
        assert result.to_payload() == {"images": ["https://img.example.com/1.png"]}
        assert image_provider.calls == [("black-forest-labs/flux-schnell", "a lighthouse at dusk")]

    @pytest.mark.asyncio
    async def test_image_job_empty_output(self, dispatcher, image_provider):
        image_provider.output = []

        with pytest.raises(MalformedOutputError):
            await dispatcher.dispatch(_job("image", {"prompt": "x"}))

    @pytest.mark.asyncio
    async def test_image_job_without_prompt(self, dispatcher, image_provider):
        with pytest.raises(InvalidInputError):
            await dispatcher.dispatch(_job("image", {"style": "noir"}))

        assert image_provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_service(self, dispatcher):
        with pytest.raises(UnknownServiceError):
            await dispatcher.dispatch(_job("nope"))

    def test_timeout_for_kind(self, dispatcher):
        assert dispatcher.timeout_for(FulfillmentKind.TEXT) == 0.5
        assert dispatcher.timeout_for(FulfillmentKind.IMAGE) == 0.5
