"""
Configuration management and loading.

Handles engine settings: display timezone, fallback pricing models, range
limits, counter store connection and pricing overrides.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_rollup.core.keys import Dimension
from usage_rollup.core.pricing import PRICING_TABLE, ModelPricing, PricingTable
from usage_rollup.storage.db import DEFAULT_REDIS_URL, DEFAULT_TIMEOUT_SECONDS

DEFAULT_FALLBACK_MODEL = "claude-3-5-sonnet-20241022"

# product family -> representative model for windows without model data
DEFAULT_FAMILY_FALLBACK_MODELS = {
    "claude": DEFAULT_FALLBACK_MODEL,
    "claude-console": DEFAULT_FALLBACK_MODEL,
    "openai": "gpt-4o-mini-2024-07-18",
    "openai-responses": "gpt-4o-mini-2024-07-18",
    "gemini": "gemini-1.5-flash",
}


def _default_fallback_models() -> Dict[Dimension, str]:
    return {
        Dimension.API_KEY: DEFAULT_FALLBACK_MODEL,
        Dimension.ACCOUNT: DEFAULT_FALLBACK_MODEL,
    }


@dataclass(frozen=True)
class StoreConfig:
    """Counter store connection settings."""
    url: str = DEFAULT_REDIS_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self):
        """Validate connection values."""
        if not self.url:
            raise ValueError("store url cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("store timeout_seconds must be > 0")


@dataclass(frozen=True)
class EngineConfig:
    """Complete aggregation engine configuration."""
    timezone_offset_hours: float = 8.0
    fallback_models: Dict[Dimension, str] = field(default_factory=_default_fallback_models)
    family_fallback_models: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_FAMILY_FALLBACK_MODELS))
    max_range_days: int = 365
    trend_max_days: int = 60
    store: StoreConfig = field(default_factory=StoreConfig)
    pricing_overrides: Dict[str, ModelPricing] = field(default_factory=dict)

    def __post_init__(self):
        """Validate limits and fallback models."""
        if not -12 <= self.timezone_offset_hours <= 14:
            raise ValueError("timezone_offset_hours must be between -12 and 14")
        if self.max_range_days <= 0:
            raise ValueError("max_range_days must be > 0")
        if self.trend_max_days <= 0:
            raise ValueError("trend_max_days must be > 0")
        for dimension in Dimension:
            if not self.fallback_models.get(dimension):
                raise ValueError(f"Missing fallback model for {dimension.value}")
        for family, model in self.family_fallback_models.items():
            if not model:
                raise ValueError(f"Missing fallback model for family {family}")

    def fallback_model(self, dimension: Dimension, family: Optional[str] = None) -> str:
        """Representative model used when a window has no model breakdown.

        The product family mapping wins when it knows ``family``; otherwise
        the dimension default applies.
        """
        if family:
            model = self.family_fallback_models.get(family.strip().lower())
            if model:
                return model
        return self.fallback_models[dimension]

    def pricing_table(self) -> PricingTable:
        """Built-in pricing table extended with configured overrides."""
        if not self.pricing_overrides:
            return PRICING_TABLE
        return PRICING_TABLE.with_overrides(self.pricing_overrides)


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Every section is optional; omitted values keep their defaults. Unknown
    keys are rejected so typos do not silently fall back to defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {
        'timezone_offset_hours', 'fallback_models', 'family_fallback_models', 'max_range_days',
        'trend_max_days', 'store', 'pricing',
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'timezone_offset_hours' in raw_config:
        kwargs['timezone_offset_hours'] = _number(
            raw_config['timezone_offset_hours'], 'timezone_offset_hours')

    for key in ('max_range_days', 'trend_max_days'):
        if key in raw_config:
            value = raw_config[key]
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"'{key}' must be an integer")
            kwargs[key] = value

    if 'fallback_models' in raw_config:
        kwargs['fallback_models'] = _parse_fallback_models(raw_config['fallback_models'])

    if 'family_fallback_models' in raw_config:
        kwargs['family_fallback_models'] = _parse_family_fallback_models(
            raw_config['family_fallback_models'])

    if 'store' in raw_config:
        kwargs['store'] = _parse_store(raw_config['store'])

    if 'pricing' in raw_config:
        kwargs['pricing_overrides'] = _parse_pricing(raw_config['pricing'])

    return EngineConfig(**kwargs)


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _parse_fallback_models(data: Any) -> Dict[Dimension, str]:
    """Parse the dimension -> representative model mapping."""
    if not isinstance(data, dict):
        raise ValueError("'fallback_models' must be a dictionary")

    allowed_keys = {d.value for d in Dimension}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown fallback_models keys: {unknown_keys}")

    models = _default_fallback_models()
    for name, model in data.items():
        if not isinstance(model, str) or not model.strip():
            raise ValueError(f"'fallback_models.{name}' must be a non-empty string")
        models[Dimension(name)] = model.strip()
    return models


def _parse_family_fallback_models(data: Any) -> Dict[str, str]:
    """Parse the product family -> representative model mapping.

    Entries extend the built-in families; a listed family replaces its default.
    """
    if not isinstance(data, dict):
        raise ValueError("'family_fallback_models' must be a dictionary")

    models = dict(DEFAULT_FAMILY_FALLBACK_MODELS)
    for family, model in data.items():
        if not isinstance(model, str) or not model.strip():
            raise ValueError(f"'family_fallback_models.{family}' must be a non-empty string")
        models[str(family).strip().lower()] = model.strip()
    return models


def _parse_store(data: Any) -> StoreConfig:
    if not isinstance(data, dict):
        raise ValueError("'store' must be a dictionary")

    allowed_keys = {'url', 'timeout_seconds'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown store keys: {unknown_keys}")

    url = data.get('url', DEFAULT_REDIS_URL)
    if not isinstance(url, str):
        raise ValueError("'store.url' must be a string")
    timeout = _number(data.get('timeout_seconds', DEFAULT_TIMEOUT_SECONDS),
                      'store.timeout_seconds')
    return StoreConfig(url=url, timeout_seconds=timeout)


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    """Parse pricing overrides, USD per million tokens.

    Args:
        data: Mapping of model id to rate dictionary

    Returns:
        ModelPricing per model id

    Raises:
        ValueError: If a rate is missing, unknown or negative
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    allowed_keys = {'input', 'output', 'cache_write', 'cache_read'}
    prices = {}
    for model, rates in data.items():
        path = f"pricing.{model}"
        if not isinstance(rates, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(rates.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        for required in ('input', 'output'):
            if required not in rates:
                raise ValueError(f"Missing required '{required}' in {path}")

        parsed = {}
        for key in allowed_keys:
            raw = rates.get(key, 0)
            try:
                rate = Decimal(str(raw))
            except InvalidOperation:
                raise ValueError(f"'{key}' in {path} must be a number")
            if isinstance(raw, bool) or not rate.is_finite() or rate < 0:
                raise ValueError(f"'{key}' in {path} must be >= 0")
            parsed[key] = rate

        prices[str(model)] = ModelPricing(
            input_per_million=parsed['input'],
            output_per_million=parsed['output'],
            cache_write_per_million=parsed['cache_write'],
            cache_read_per_million=parsed['cache_read'],
        )
    return prices
