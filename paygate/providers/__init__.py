"""
Generation providers and the dispatcher that routes jobs to them.
"""

from .model_provider import (
    GenerationResult,
    TextProvider,
    ImageProvider,
    AnthropicTextProvider,
    ReplicateImageProvider,
)
from .dispatcher import (
    ProviderDispatcher,
    extract_prompt,
    parse_text_output,
    normalize_image_output,
)

__all__ = [
    "GenerationResult",
    "TextProvider",
    "ImageProvider",
    "AnthropicTextProvider",
    "ReplicateImageProvider",
    "ProviderDispatcher",
    "extract_prompt",
    "parse_text_output",
    "normalize_image_output",
]
