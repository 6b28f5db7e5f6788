"""
Service Catalog.

Static mapping of service key -> price and fulfillment details. Prices
are copied onto a job at creation; the catalog is never consulted again
for the amount a payment must match.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .entities import FulfillmentKind, quantize_price
from .errors import UnknownServiceError

_JSON_ONLY = "Respond with a single JSON object and nothing else."


@dataclass(frozen=True)
class CatalogEntry:
    """One purchasable service."""

    key: str
    name: str
    description: str
    price: Decimal
    kind: FulfillmentKind
    system_prompt: Optional[str] = None  # text services
    model: Optional[str] = None  # image services

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "price": str(self.price),
            "kind": self.kind.value,
        }


def _text(key: str, name: str, description: str, price: str, prompt: str) -> CatalogEntry:
    return CatalogEntry(
        key=key,
        name=name,
        description=description,
        price=quantize_price(price),
        kind=FulfillmentKind.TEXT,
        system_prompt=f"{prompt}\n\n{_JSON_ONLY}",
    )


def _image(key: str, name: str, description: str, price: str, model: str) -> CatalogEntry:
    return CatalogEntry(
        key=key,
        name=name,
        description=description,
        price=quantize_price(price),
        kind=FulfillmentKind.IMAGE,
        model=model,
    )


SERVICES: dict[str, CatalogEntry] = {
    entry.key: entry
    for entry in (
        _text(
            "brainstorm",
            "Brainstorm",
            "Generate 5 creative ideas for any topic",
            "0.10",
            "You are an expert creative strategist. Generate exactly 5 creative "
            "ideas for the user's topic. For each idea give a short angle name, "
            "the idea in 1-2 sentences and why it works. Format: "
            '{"ideas": [{"angle": "...", "idea": "...", "why": "..."}]}',
        ),
        _text(
            "concept",
            "Creative Concept",
            "Campaign concept with insight, idea and execution plan",
            "0.50",
            "You are a senior creative director. Create a campaign concept with "
            "the human insight, the tension it taps into, the core idea, a "
            "headline, an execution plan and the strategic rationale. Format: "
            '{"insight": "...", "tension": "...", "idea": "...", "headline": "...", '
            '"execution": {"hero": "...", "social": "...", "experiential": "..."}, '
            '"why_it_works": "..."}',
        ),
        _text(
            "write",
            "Copywriting",
            "Sharp copy with tone guidance and alternatives",
            "0.15",
            "You are a sharp copywriter. Write copy that sounds human, has a "
            "clear point of view and uses rhythm. Format: "
            '{"tone": "...", "output": "...", "alternatives": ["...", "..."]}',
        ),
        _text(
            "research",
            "Research Report",
            "Structured research summary with key findings",
            "0.50",
            "You are a research analyst. Summarize what is known about the "
            "user's topic with key findings, open questions and suggested "
            'next steps. Format: {"summary": "...", "findings": ["..."], '
            '"open_questions": ["..."], "next_steps": ["..."]}',
        ),
        _text(
            "summarize",
            "Summarize",
            "Condense a text into a summary and key points",
            "0.25",
            "You condense text. Produce a short summary and the key points of "
            'the user\'s text. Format: {"summary": "...", "key_points": ["..."]}',
        ),
        _image(
            "image",
            "Image Generation",
            "Fast text-to-image generation",
            "0.25",
            "black-forest-labs/flux-schnell",
        ),
        _image(
            "image-hd",
            "HD Image Generation",
            "Higher quality text-to-image generation",
            "0.50",
            "stability-ai/sdxl:39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b",
        ),
    )
}


def get_entry(service_key: str) -> CatalogEntry:
    """
    Look up a catalog entry.

    Raises:
        UnknownServiceError: If the key is not in the catalog
    """
    entry = SERVICES.get(service_key)
    if entry is None:
        raise UnknownServiceError(service_key)
    return entry


def list_entries() -> list[CatalogEntry]:
    return list(SERVICES.values())
