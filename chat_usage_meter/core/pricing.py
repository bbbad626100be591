"""
Pricing calculations and model registry.

Handles cost computations, slug discovery and categorization for chat models.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .token_counter import ImageUsage, TextUsage, Usage

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown_model"
RESEARCH_MODEL = "research"
DALLE_MODEL = "dalle-3"
IMAGE_GEN_MODEL = "gpt-image-1"

# Image models that are always recognized, whether or not the export names them
SYNTHETIC_IMAGE_MODELS = ("dalle-2", DALLE_MODEL, IMAGE_GEN_MODEL)


class RegistryFrozenError(RuntimeError):
    """Raised when a frozen registry is asked to add a new slug."""


@dataclass(frozen=True)
class TextPricing:
    """Per-million-token pricing for a text model."""
    input_per_million: float
    output_per_million: float


@dataclass(frozen=True)
class ImagePricing:
    """Flat per-image pricing for an image generation model."""
    per_image: float


PricingEntry = Union[TextPricing, ImagePricing]

ZERO_PRICING = TextPricing(input_per_million=0.0, output_per_million=0.0)


# Default pricing table, USD per million tokens
DEFAULT_TEXT_PRICES: Dict[str, TextPricing] = {
    "o1-pro": TextPricing(150.0, 600.0),
    "o1-mini": TextPricing(1.1, 4.4),
    "o4-mini-high": TextPricing(1.1, 4.4),
    "o4-mini": TextPricing(1.1, 4.4),
    "gpt-4": TextPricing(30.0, 60.0),
    "gpt-4-turbo": TextPricing(10.0, 30.0),
    "gpt-4o": TextPricing(5.0, 15.0),
    "gpt-3.5-turbo": TextPricing(0.5, 1.5),
    "o3-mini": TextPricing(1.1, 4.4),
    "o3-mini-high": TextPricing(1.1, 4.4),
    "gpt-4o-jawbone": TextPricing(2.5, 10.0),
    "gpt-4-5": TextPricing(75.0, 150.0),
    "text-davinci-002-render-sha": TextPricing(12.0, 12.0),
    "o1": TextPricing(15.0, 60.0),
    "o3": TextPricing(10.0, 40.0),
    "o1-preview": TextPricing(15.0, 60.0),
    "gpt-4o-mini": TextPricing(0.15, 0.6),
    "gpt-4-gizmo": TextPricing(30.0, 60.0),
    "gpt-4-code-interpreter": TextPricing(30.0, 60.0),
    "auto": TextPricing(5.0, 15.0),
    RESEARCH_MODEL: TextPricing(1.1, 4.4),
}

# USD per generated image
DEFAULT_IMAGE_PRICES: Dict[str, ImagePricing] = {
    "dalle-2": ImagePricing(0.02),
    DALLE_MODEL: ImagePricing(0.08),
    IMAGE_GEN_MODEL: ImagePricing(0.167),
}


class ModelRegistry:
    """Pricing table owned by a single aggregation run.

    Mutable only until ``freeze()`` is called; after that lookups are
    read-only and registering a new slug is an error.
    """

    def __init__(self, prices: Optional[Dict[str, PricingEntry]] = None):
        if prices is None:
            prices = {**DEFAULT_TEXT_PRICES, **DEFAULT_IMAGE_PRICES}
        self._prices: Dict[str, PricingEntry] = dict(prices)
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def slugs(self) -> List[str]:
        return list(self._prices)

    def freeze(self) -> None:
        """Finalize the table. Called by the orchestrator after the pre-scan."""
        self._frozen = True

    def __contains__(self, slug: str) -> bool:
        return slug in self._prices

    def get_pricing(self, slug: str) -> PricingEntry:
        """Get pricing for a model, zero rates if the slug is not registered."""
        return self._prices.get(slug, ZERO_PRICING)

    def set_pricing(self, slug: str, pricing: PricingEntry) -> None:
        """Add or override a pricing entry.

        Raises:
            RegistryFrozenError: If the registry has been frozen
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot change pricing for {slug}: registry is frozen")
        self._prices[slug] = pricing

    def register_if_unknown(self, slug: str) -> bool:
        """Insert a zero-rate placeholder for an unseen slug.

        Args:
            slug: Model identifier

        Returns:
            True if a placeholder was inserted, False if the slug was known

        Raises:
            RegistryFrozenError: If the slug is new and the registry is frozen
        """
        if slug in self._prices:
            return False
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {slug}: registry is frozen")
        self._prices[slug] = ZERO_PRICING
        logger.info("Added zero-cost placeholder for model: %s", slug)
        return True

    def get_cost(self, slug: str, usage: Usage) -> float:
        """Calculate the cost of one usage record.

        Image models are priced per image. Text models are priced per million
        input and output tokens.

        Args:
            slug: Model identifier
            usage: TextUsage or ImageUsage

        Returns:
            Cost in USD, unrounded
        """
        pricing = self.get_pricing(slug)

        if isinstance(pricing, ImagePricing):
            if isinstance(usage, ImageUsage):
                return usage.image_count * pricing.per_image
            # Legacy records carry the image count in the output field
            return usage.output_tokens * pricing.per_image

        if isinstance(usage, ImageUsage):
            return 0.0

        return (
            usage.input_tokens / 1e6 * pricing.input_per_million
            + usage.output_tokens / 1e6 * pricing.output_per_million
        )


def calculate_cost(registry: ModelRegistry, slug: str, input_tokens: int, output_tokens: int) -> float:
    """Price raw token counts against a registry."""
    return registry.get_cost(slug, TextUsage(input_tokens=input_tokens, output_tokens=output_tokens))


def _slugs_in_message(message: Any, found: Set[str]) -> None:
    if not isinstance(message, dict):
        return
    metadata = message.get("metadata") or {}
    if isinstance(metadata, dict):
        if metadata.get("model_slug"):
            found.add(metadata["model_slug"])
        if metadata.get("image_gen_async"):
            found.add(IMAGE_GEN_MODEL)

    author = message.get("author") or {}
    author_name = author.get("name") if isinstance(author, dict) else None
    if (author_name or message.get("name")) == "dalle.text2im":
        found.add(DALLE_MODEL)


def scan_for_model_slugs(
    conversations: Iterable[Any],
    registry: ModelRegistry,
    max_scan: Optional[int] = None,
) -> Set[str]:
    """Discover every model slug referenced by an export.

    Any slug missing from the registry gets a zero-cost placeholder so that
    aggregation never has to mutate pricing mid-run.

    Args:
        conversations: Parsed export (list of conversation dicts)
        registry: Registry to seed with placeholders
        max_scan: Only scan the first N conversations

    Returns:
        Set of all discovered model slugs
    """
    conversations = list(conversations)
    scan_count = len(conversations) if max_scan is None else min(len(conversations), max_scan)
    logger.info("Scanning %d of %d conversation(s) for model slugs", scan_count, len(conversations))

    found: Set[str] = set(SYNTHETIC_IMAGE_MODELS)

    for conversation in conversations[:scan_count]:
        if not isinstance(conversation, dict):
            continue

        mapping = conversation.get("mapping")
        if isinstance(mapping, dict):
            for node in mapping.values():
                if not isinstance(node, dict):
                    continue
                _slugs_in_message(node.get("message"), found)
                node_metadata = node.get("metadata")
                if isinstance(node_metadata, dict) and node_metadata.get("model_slug"):
                    found.add(node_metadata["model_slug"])

        messages = conversation.get("messages")
        if isinstance(messages, list):
            for message in messages:
                _slugs_in_message(message, found)
                if isinstance(message, dict) and message.get("model_slug"):
                    found.add(message["model_slug"])

        default_slug = conversation.get("default_model_slug")
        if isinstance(default_slug, str):
            found.add(default_slug)

    missing = sorted(slug for slug in found if slug not in registry and slug != UNKNOWN_MODEL)
    if missing:
        logger.warning("Models in data but missing from pricing table: %s", missing)
        for slug in missing:
            registry.register_if_unknown(slug)

    unused = [slug for slug in registry.slugs if slug not in found]
    if unused:
        logger.debug("Priced models not found in the dataset: %s", unused)

    return found


# Model categories in priority order
MODEL_CATEGORIES = (
    "GPT-4",
    "GPT-4.5",
    "GPT-4o",
    "GPT-3",
    "Reasoning",
    "Vision",
    "Audio",
    "Research",
    "Other",
)

_REASONING_MARKERS = ("reasoning", "code", "o1", "o3", "o4")
_VISION_MARKERS = ("vision", "image", "dall-e", "dalle")
_AUDIO_MARKERS = ("whisper", "audio", "tts", "voice", "speech")
_RESEARCH_MARKERS = ("research", "davinci", "curie", "babbage", "ada", "instruct", "embedding")


def get_model_category(slug: str) -> str:
    """Determine which category a model belongs to based on its slug."""
    lower = slug.lower()

    if "gpt-4o" in lower:
        return "Vision" if "vision" in lower else "GPT-4o"
    if "gpt-4-5" in lower:
        return "GPT-4.5"
    if "gpt-4" in lower:
        return "GPT-4"
    if "gpt-3.5" in lower or "text-davinci" in lower:
        return "GPT-3"
    if any(marker in lower for marker in _REASONING_MARKERS) or lower.startswith("o-"):
        return "Reasoning"
    if any(marker in lower for marker in _VISION_MARKERS):
        return "Vision"
    if any(marker in lower for marker in _AUDIO_MARKERS):
        return "Audio"
    if any(marker in lower for marker in _RESEARCH_MARKERS):
        return "Research"
    return "Other"


def compare_categories(a: str, b: str) -> int:
    """Compare categories by priority order; unknown categories sort as Other."""
    return _category_rank(a) - _category_rank(b)


def _category_rank(category: str) -> int:
    if category in MODEL_CATEGORIES:
        return MODEL_CATEGORIES.index(category)
    return MODEL_CATEGORIES.index("Other")


def sort_by_category(slugs: Iterable[str]) -> List[str]:
    """Sort slugs by category priority, then alphabetically."""
    return sorted(slugs, key=lambda slug: (_category_rank(get_model_category(slug)), slug))
