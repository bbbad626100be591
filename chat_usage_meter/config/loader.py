"""
Configuration management and loading.

Handles pricing overrides and tokenizer settings from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

from chat_usage_meter.core.graph_walker import NODE_ORDER_MAPPING, NODE_ORDERS
from chat_usage_meter.core.pricing import ImagePricing, ModelRegistry, TextPricing
from chat_usage_meter.core.token_counter import DEFAULT_RETRY_DELAY, TokenCounter
from chat_usage_meter.core.tokenizer_worker import DEFAULT_ENCODING


@dataclass(frozen=True)
class TokenizerConfig:
    """Settings for the background tokenizer."""
    encoding: str = DEFAULT_ENCODING
    retry_delay: float = DEFAULT_RETRY_DELAY
    cache_dir: Optional[str] = None

    def __post_init__(self):
        """Validate tokenizer values."""
        if not self.encoding:
            raise ValueError("encoding cannot be empty")
        if self.retry_delay <= 0:
            raise ValueError("retry_delay must be > 0")


@dataclass(frozen=True)
class MeterConfig:
    """Complete meter configuration."""
    text_prices: Dict[str, TextPricing] = field(default_factory=dict)
    image_prices: Dict[str, ImagePricing] = field(default_factory=dict)
    tokenizer: TokenizerConfig = field(default_factory=TokenizerConfig)
    node_order: str = NODE_ORDER_MAPPING

    def __post_init__(self):
        """Validate walker settings."""
        if self.node_order not in NODE_ORDERS:
            raise ValueError(f"node_order must be one of: {list(NODE_ORDERS)}")

    def build_registry(self) -> ModelRegistry:
        """Registry with the default table plus the configured overrides."""
        registry = ModelRegistry()
        for slug, pricing in self.text_prices.items():
            registry.set_pricing(slug, pricing)
        for slug, pricing in self.image_prices.items():
            registry.set_pricing(slug, pricing)
        return registry

    def build_counter(self) -> TokenCounter:
        return TokenCounter(
            encoding_name=self.tokenizer.encoding,
            retry_delay=self.tokenizer.retry_delay,
            cache_dir=self.tokenizer.cache_dir
        )


def load_meter_config(path: Optional[str] = None) -> MeterConfig:
    """Load and validate meter configuration from a YAML file.

    Every section is optional; unknown keys are rejected so a typo never
    silently leaves a price at its default.

    Args:
        path: Path to YAML configuration file, None for defaults

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return MeterConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeterConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'pricing', 'tokenizer', 'walker'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    text_prices, image_prices = _parse_pricing(raw_config.get('pricing') or {})
    tokenizer = _parse_tokenizer(raw_config.get('tokenizer') or {})

    walker_data = raw_config.get('walker') or {}
    _check_section(walker_data, 'walker', {'node_order'})
    node_order = walker_data.get('node_order', NODE_ORDER_MAPPING)
    if node_order not in NODE_ORDERS:
        raise ValueError(f"'walker.node_order' must be one of: {list(NODE_ORDERS)}")

    return MeterConfig(
        text_prices=text_prices,
        image_prices=image_prices,
        tokenizer=tokenizer,
        node_order=node_order
    )


def _check_section(data, path: str, allowed_keys: set) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_rate(value, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"'{path}' must be a number >= 0")
    return float(value)


def _parse_pricing(data: Dict):
    """Parse and validate the pricing section.

    Args:
        data: Pricing configuration data

    Returns:
        Tuple of text model prices and image model prices

    Raises:
        ValueError: If configuration is invalid
    """
    _check_section(data, 'pricing', {'models', 'images'})

    models_data = data.get('models') or {}
    if not isinstance(models_data, dict):
        raise ValueError("'pricing.models' must be a dictionary")

    text_prices = {}
    for slug, rates in models_data.items():
        path = f"pricing.models.{slug}"
        _check_section(rates, path, {'input', 'output'})
        if 'input' not in rates or 'output' not in rates:
            raise ValueError(f"Missing 'input' or 'output' rate in {path}")
        text_prices[str(slug)] = TextPricing(
            input_per_million=_parse_rate(rates['input'], f"{path}.input"),
            output_per_million=_parse_rate(rates['output'], f"{path}.output")
        )

    images_data = data.get('images') or {}
    if not isinstance(images_data, dict):
        raise ValueError("'pricing.images' must be a dictionary")

    image_prices = {}
    for slug, rate in images_data.items():
        image_prices[str(slug)] = ImagePricing(per_image=_parse_rate(rate, f"pricing.images.{slug}"))

    overlap = set(text_prices) & set(image_prices)
    if overlap:
        raise ValueError(f"Models priced both per token and per image: {overlap}")

    return text_prices, image_prices


def _parse_tokenizer(data: Dict) -> TokenizerConfig:
    _check_section(data, 'tokenizer', {'encoding', 'retry_delay', 'cache_dir'})

    encoding = data.get('encoding', DEFAULT_ENCODING)
    if not isinstance(encoding, str):
        raise ValueError("'tokenizer.encoding' must be a string")

    retry_delay = data.get('retry_delay', DEFAULT_RETRY_DELAY)
    if isinstance(retry_delay, bool) or not isinstance(retry_delay, (int, float)):
        raise ValueError("'tokenizer.retry_delay' must be a number")

    cache_dir = data.get('cache_dir')
    if cache_dir is not None and (not isinstance(cache_dir, str) or not cache_dir):
        raise ValueError("'tokenizer.cache_dir' must be a non-empty string")

    return TokenizerConfig(encoding=encoding, retry_delay=float(retry_delay), cache_dir=cache_dir)
