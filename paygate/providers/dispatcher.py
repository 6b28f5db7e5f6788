"""
Provider Dispatcher.

Routes a paid job to the text or image provider for its catalog entry,
enforces a per-kind timeout and turns raw provider output into a typed
result envelope.

What the dispatcher MUST NOT do:
- Change job state (the orchestrator owns transitions)
- Retry a failed or timed-out provider call
- Salvage partial output (no substring JSON extraction)
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable

from paygate.pipeline.catalog import CatalogEntry, get_entry
from paygate.pipeline.entities import (
    FulfillmentKind,
    ImageResult,
    Job,
    ProviderResult,
    TextResult,
)
from paygate.pipeline.errors import (
    InvalidInputError,
    MalformedOutputError,
    ProviderTimeoutError,
)

from .model_provider import ImageProvider, TextProvider

logger = logging.getLogger(__name__)

DEFAULT_TEXT_TIMEOUT = 30.0
DEFAULT_IMAGE_TIMEOUT = 60.0

# One enclosing ``` or ```json fence around the whole response
_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?\s*```$", re.DOTALL)


def extract_prompt(kind: FulfillmentKind, input_data: dict) -> str:
    """
    Derive the provider prompt from a job's input.

    Text jobs use input["prompt"], then input["input"], then the whole
    input serialized as JSON. Image jobs require a non-empty string
    prompt.

    Raises:
        InvalidInputError: If the input does not fit the kind
    """
    if not isinstance(input_data, dict):
        raise InvalidInputError("Job input must be a JSON object")

    for key in ("prompt", "input"):
        value = input_data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    if kind == FulfillmentKind.IMAGE:
        raise InvalidInputError("Image jobs require a non-empty 'prompt' string")

    if not input_data:
        raise InvalidInputError("Text jobs require a non-empty input")

    return json.dumps(input_data)


def _reject_constant(name: str):
    # NaN, Infinity and -Infinity are accepted by json.loads but are not JSON
    raise MalformedOutputError(f"Response contains non-JSON constant {name}")


def parse_text_output(text: Any) -> dict:
    """
    Parse a text provider response as exactly one JSON object.

    A single enclosing markdown code fence is stripped first; anything
    else that is not one JSON object is rejected.

    Raises:
        MalformedOutputError: If the response is not one JSON object
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedOutputError("Text provider returned an empty response")

    candidate = text.strip()
    fenced = _FENCE_PATTERN.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        parsed = json.loads(candidate, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Response is not a single JSON object: {e.msg}") from e

    if not isinstance(parsed, dict):
        raise MalformedOutputError(
            f"Response must be a JSON object, got {type(parsed).__name__}"
        )

    return parsed


def normalize_image_output(output: Any) -> list[str]:
    """
    Normalize image provider output to a list of URL strings.

    Raises:
        MalformedOutputError: If there are no images
    """
    if output is None:
        images = []
    elif isinstance(output, str):
        images = [output] if output else []
    elif isinstance(output, (list, tuple)):
        images = [str(item) for item in output if item is not None and str(item)]
    else:
        images = [str(output)]

    if not images:
        raise MalformedOutputError("Image provider returned no images")

    return images


class ProviderDispatcher:
    """
    Executes one provider call per job.

    Providers are injected; the dispatcher holds no other state.
    """

    def __init__(
        self,
        text_provider: TextProvider,
        image_provider: ImageProvider,
        text_timeout: float = DEFAULT_TEXT_TIMEOUT,
        image_timeout: float = DEFAULT_IMAGE_TIMEOUT,
        catalog_lookup: Callable[[str], CatalogEntry] = get_entry,
    ):
        """
        Initialize ProviderDispatcher.

        Args:
            text_provider: Provider for text entries
            image_provider: Provider for image entries
            text_timeout: Seconds before a text call is abandoned
            image_timeout: Seconds before an image call is abandoned
            catalog_lookup: Resolves a service key to its catalog entry
        """
        self.text_provider = text_provider
        self.image_provider = image_provider
        self.text_timeout = text_timeout
        self.image_timeout = image_timeout
        self._lookup = catalog_lookup

    def timeout_for(self, kind: FulfillmentKind) -> float:
        return self.text_timeout if kind == FulfillmentKind.TEXT else self.image_timeout

    async def dispatch(self, job: Job) -> ProviderResult:
        """
        Run the provider for a job and return its typed result.

        Raises:
            UnknownServiceError: If the job's service is not in the catalog
            InvalidInputError: If the job input does not fit the kind
            ProviderError: If the provider reports a failure
            MalformedOutputError: If the output violates its contract
            ProviderTimeoutError: If the call exceeds its timeout
        """
        entry = self._lookup(job.service_key)
        prompt = extract_prompt(entry.kind, job.input_data)
        timeout = self.timeout_for(entry.kind)

        if entry.kind == FulfillmentKind.TEXT:
            call = self.text_provider.generate(entry.system_prompt or "", prompt)
        else:
            options = job.input_data.get("options")
            call = self.image_provider.generate(
                entry.model, prompt, options if isinstance(options, dict) else None
            )

        logger.info(
            f"[Dispatcher] Dispatching job {job.job_id} "
            f"({job.service_key}, {entry.kind.value}, timeout={timeout}s)"
        )
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"[Dispatcher] Job {job.job_id} timed out after {timeout}s"
            )
            raise ProviderTimeoutError(entry.kind.value, timeout) from e

        duration = time.monotonic() - started

        if entry.kind == FulfillmentKind.TEXT:
            envelope: ProviderResult = TextResult(data=parse_text_output(result.output))
        else:
            envelope = ImageResult(images=normalize_image_output(result.output))

        logger.info(
            f"[Dispatcher] Job {job.job_id} finished in {duration:.2f}s "
            f"({result.provider}/{result.model})"
        )
        return envelope
