"""
Generation provider abstraction.

Two fulfillment legs:
- AnthropicTextProvider: Claude Messages API, returns raw text
- ReplicateImageProvider: Replicate predictions API, returns raw output

Providers only talk to their backend and report failures as
ProviderError. Output contracts (JSON object, image URL list) are
enforced by the dispatcher.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import anthropic
import httpx

from paygate.pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

REPLICATE_API_URL = "https://api.replicate.com/v1"
REPLICATE_POLL_INTERVAL = 1.0
REPLICATE_TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


@dataclass
class GenerationResult:
    """Raw result from a provider call."""
    output: Any
    usage: Optional[Dict[str, int]]
    provider: str
    model: str


class TextProvider(ABC):
    """Abstract base class for text providers."""

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult:
        """
        Generate text.

        Args:
            system_prompt: Catalog entry's system prompt
            user_prompt: Prompt taken from the job input

        Returns:
            GenerationResult whose output is the response text

        Raises:
            ProviderError: If the backend reports a failure
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name for metadata."""
        pass


class ImageProvider(ABC):
    """Abstract base class for image providers."""

    @abstractmethod
    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """
        Generate images.

        Args:
            model: Model id ("owner/name" or "owner/name:version")
            prompt: Image prompt
            options: Extra model input parameters

        Returns:
            GenerationResult whose output is the backend's raw output

        Raises:
            ProviderError: If the backend reports a failure
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name for metadata."""
        pass


class AnthropicTextProvider(TextProvider):
    """Claude (Anthropic) text provider."""

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str,
        max_tokens: int = 2000,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.model_name = model_name
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._client = client

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise ProviderError("ANTHROPIC_API_KEY is not configured")
            # Per-call timeouts are enforced by the dispatcher
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        return self._client

    async def generate(self, system_prompt: str, user_prompt: str) -> GenerationResult:
        """Generate using the Claude Messages API."""
        client = self._get_client()
        logger.info(f"[AnthropicTextProvider] Generating with {self.model_name}")

        try:
            message = await client.messages.create(
                model=self.model_name,
                max_tokens=self.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIError as e:
            logger.error(f"[AnthropicTextProvider] Generation failed: {e}")
            raise ProviderError(f"Anthropic API error: {e}") from e

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )

        usage = None
        if getattr(message, "usage", None):
            usage = {
                "input_tokens": message.usage.input_tokens,
                "output_tokens": message.usage.output_tokens,
            }

        logger.info(f"[AnthropicTextProvider] Generated {len(text)} chars")

        return GenerationResult(
            output=text,
            usage=usage,
            provider=self.provider_name,
            model=self.model_name,
        )


class ReplicateImageProvider(ImageProvider):
    """
    Replicate image provider.

    Creates a prediction with ``Prefer: wait`` so most models answer in
    a single request; predictions still running after that are polled
    until they reach a terminal status.
    """

    def __init__(
        self,
        api_token: Optional[str],
        base_url: str = REPLICATE_API_URL,
        poll_interval: float = REPLICATE_POLL_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "replicate"

    def _prediction_request(self, model: str, model_input: dict) -> tuple[str, dict]:
        """Versioned ids use /predictions, official models use /models/{id}/predictions."""
        if ":" in model:
            _, version = model.split(":", 1)
            return f"{self.base_url}/predictions", {"version": version, "input": model_input}
        return f"{self.base_url}/models/{model}/predictions", {"input": model_input}

    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """Generate using the Replicate predictions API."""
        if not self._api_token:
            raise ProviderError("REPLICATE_API_TOKEN is not configured")

        logger.info(f"[ReplicateImageProvider] Generating with {model}")
        url, body = self._prediction_request(model, {"prompt": prompt, **(options or {})})
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
                response = await client.post(url, json=body, headers=headers)
                prediction = self._check_response(response)

                while prediction.get("status") not in REPLICATE_TERMINAL_STATUSES:
                    poll_url = (prediction.get("urls") or {}).get("get")
                    if not poll_url:
                        raise ProviderError("Replicate prediction has no polling URL")
                    await asyncio.sleep(self.poll_interval)
                    response = await client.get(poll_url, headers=headers)
                    prediction = self._check_response(response)

        except httpx.RequestError as e:
            logger.error(f"[ReplicateImageProvider] Request error: {e}")
            raise ProviderError(f"Replicate request error: {e}") from e

        if prediction["status"] != "succeeded":
            error = prediction.get("error") or prediction["status"]
            logger.error(f"[ReplicateImageProvider] Prediction {prediction.get('id')} {error}")
            raise ProviderError(f"Replicate prediction {prediction['status']}: {error}")

        logger.info(f"[ReplicateImageProvider] Prediction {prediction.get('id')} succeeded")

        return GenerationResult(
            output=prediction.get("output"),
            usage=prediction.get("metrics"),
            provider=self.provider_name,
            model=model,
        )

    def _check_response(self, response: httpx.Response) -> dict:
        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"Replicate HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Replicate returned invalid JSON: {e}") from e
