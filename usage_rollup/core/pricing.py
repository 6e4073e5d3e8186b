"""
Pricing calculations and rate management.

Converts token counts into monetary cost for the supported model families.
"""

import logging
import re
from dataclasses import dataclass, fields
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

from .usage import UsageTotals

logger = logging.getLogger(__name__)

PER_MILLION = Decimal("1000000")
COST_PRECISION = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD per 1M tokens."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_write_per_million: Decimal = Decimal("0")
    cache_read_per_million: Decimal = Decimal("0")


ZERO_PRICING = ModelPricing(Decimal("0"), Decimal("0"))


def format_cost(amount: Decimal) -> str:
    """Format a cost with precision scaled to its magnitude."""
    value = Decimal(amount)
    if value >= 1:
        return f"${value:.2f}"
    if value >= Decimal("0.001"):
        return f"${value:.4f}"
    return f"${value:.6f}"


@dataclass(frozen=True)
class CostBreakdown:
    """Monetary cost split by token class."""
    input: Decimal = Decimal("0")
    output: Decimal = Decimal("0")
    cache_write: Decimal = Decimal("0")
    cache_read: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.input + self.output + self.cache_write + self.cache_read

    @property
    def formatted(self) -> Dict[str, str]:
        """Human-readable amount per field, including the total."""
        return {
            "input": format_cost(self.input),
            "output": format_cost(self.output),
            "cacheWrite": format_cost(self.cache_write),
            "cacheRead": format_cost(self.cache_read),
            "total": format_cost(self.total),
        }

    def merge(self, other: "CostBreakdown") -> "CostBreakdown":
        return CostBreakdown(**{
            f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)
        })

    __add__ = merge


ZERO_COST = CostBreakdown()


def normalize_model_name(model: str) -> str:
    """Strip provider prefixes and version suffixes from a model id.

    ``us.anthropic.claude-3-5-sonnet-20241022-v2:0`` becomes
    ``claude-3-5-sonnet-20241022``; ``llama3:latest`` becomes ``llama3``.
    """
    if not model or model == "unknown":
        return model
    if ".anthropic." in model or ".claude" in model or model.startswith("anthropic."):
        normalized = re.sub(r"^[a-z0-9-]+\.", "", model)
        normalized = normalized.replace("anthropic.", "")
        return re.sub(r"-v\d+:\d+$", "", normalized)
    return re.sub(r"-v\d+:\d+$|:latest$", "", model)


@dataclass(frozen=True)
class PricingTable:
    """Pricing table keyed by model id."""
    prices: Dict[str, ModelPricing]

    def find_pricing(self, model: str) -> Optional[ModelPricing]:
        """Look a model up by exact id, then normalized id, then undated id."""
        if model in self.prices:
            return self.prices[model]
        normalized = normalize_model_name(model)
        if normalized in self.prices:
            return self.prices[normalized]
        undated = re.sub(r"-\d{8}$", "", normalized)
        return self.prices.get(undated)

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged)


def _pricing(input_rate: str, output_rate: str, cache_write: str = "0",
             cache_read: str = "0") -> ModelPricing:
    return ModelPricing(Decimal(input_rate), Decimal(output_rate),
                        Decimal(cache_write), Decimal(cache_read))


_SONNET = _pricing("3.00", "15.00", "3.75", "0.30")
_HAIKU_35 = _pricing("0.80", "4.00", "1.00", "0.08")
_OPUS = _pricing("15.00", "75.00", "18.75", "1.50")

# Built-in table; deployments extend it through the engine config
PRICING_TABLE = PricingTable({
    "claude-3-5-sonnet-20241022": _SONNET,
    "claude-3-5-sonnet": _SONNET,
    "claude-3-7-sonnet-20250219": _SONNET,
    "claude-sonnet-4-20250514": _SONNET,
    "claude-3-5-haiku-20241022": _HAIKU_35,
    "claude-3-5-haiku": _HAIKU_35,
    "claude-3-haiku-20240307": _pricing("0.25", "1.25", "0.30", "0.03"),
    "claude-3-opus-20240229": _OPUS,
    "claude-3-opus": _OPUS,
    "claude-opus-4-20250514": _OPUS,
    "gpt-4o": _pricing("2.50", "10.00", "0", "1.25"),
    "gpt-4o-mini-2024-07-18": _pricing("0.15", "0.60", "0", "0.075"),
    "gpt-4o-mini": _pricing("0.15", "0.60", "0", "0.075"),
    "gemini-1.5-flash": _pricing("0.075", "0.30", "0", "0.01875"),
    "gemini-1.5-pro": _pricing("1.25", "5.00", "0", "0.3125"),
    "gemini-2.5-flash": _pricing("0.30", "2.50", "0", "0.075"),
    "gemini-2.5-pro": _pricing("1.25", "10.00", "0", "0.31"),
})


def _token_cost(tokens: int, rate_per_million: Decimal) -> Decimal:
    cost = (Decimal(tokens) / PER_MILLION) * rate_per_million
    return cost.quantize(COST_PRECISION, rounding=ROUND_HALF_UP)


def calculate_cost(
    usage: UsageTotals,
    model: str,
    table: PricingTable = PRICING_TABLE,
) -> CostBreakdown:
    """Calculate the cost of a usage total for one model.

    Each token class is priced separately and rounded to six decimal places.
    Models missing from the table cost zero and are logged.

    Args:
        usage: Token counts to price
        model: Model identifier (callers substitute a default when unknown)
        table: Pricing table to use

    Returns:
        CostBreakdown for the usage

    Raises:
        ValueError: If model is empty
    """
    if not model:
        raise ValueError("model is required and cannot be empty")

    pricing = table.find_pricing(model)
    if pricing is None:
        logger.warning("No pricing for model %s, costing as zero", model)
        pricing = ZERO_PRICING

    return CostBreakdown(
        input=_token_cost(usage.input_tokens, pricing.input_per_million),
        output=_token_cost(usage.output_tokens, pricing.output_per_million),
        cache_write=_token_cost(usage.cache_create_tokens, pricing.cache_write_per_million),
        cache_read=_token_cost(usage.cache_read_tokens, pricing.cache_read_per_million),
    )
