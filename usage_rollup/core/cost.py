"""
Cost rollup across model sub-buckets.

Prices each model once over its summed tokens and adds the results. Windows
that predate per-model tracking are priced with a representative model.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Tuple

from .pricing import CostBreakdown, ZERO_COST, calculate_cost
from .usage import UsageTotals, ZERO_USAGE
from usage_rollup.storage.models import ModelUsageBucket

logger = logging.getLogger(__name__)

CostFunction = Callable[[UsageTotals, str], CostBreakdown]


@dataclass(frozen=True)
class ModelCostLine:
    """Usage and cost of one model within a window."""
    model: str
    usage: UsageTotals
    cost: CostBreakdown
    is_fallback: bool = False


@dataclass(frozen=True)
class CostRollup:
    """Summed cost of a window plus the per-model lines it came from."""
    cost: CostBreakdown
    lines: Tuple[ModelCostLine, ...]
    used_fallback: bool = False


def group_by_model(buckets: Iterable[ModelUsageBucket]) -> Dict[str, UsageTotals]:
    """Sum model sub-bucket usage per model name, in first-seen order."""
    grouped: Dict[str, UsageTotals] = {}
    for bucket in buckets:
        grouped[bucket.model_name] = grouped.get(bucket.model_name, ZERO_USAGE).merge(bucket.usage)
    return grouped


def rollup_costs(
    model_buckets: Iterable[ModelUsageBucket],
    raw_usage: UsageTotals,
    fallback_model: str,
    cost_fn: CostFunction = calculate_cost,
) -> CostRollup:
    """Compute the cost of one window.

    With model sub-buckets present, the cost is the sum of one pricing call
    per model. Without them, a window whose raw usage shows tokens is priced
    once with ``fallback_model`` over the raw aggregate; this is an
    approximation for data written before per-model tracking existed.

    Args:
        model_buckets: Model sub-buckets found for the window
        raw_usage: Normalized raw usage of the same window
        fallback_model: Representative model for windows without breakdowns
        cost_fn: Pricing calculator, ``cost_fn(usage, model)``

    Returns:
        CostRollup with the summed cost and per-model lines

    Raises:
        ValueError: If a fallback is needed and fallback_model is empty
    """
    grouped = group_by_model(model_buckets)

    if grouped:
        lines = []
        total = ZERO_COST
        for model, usage in grouped.items():
            cost = cost_fn(usage, model or fallback_model)
            lines.append(ModelCostLine(model=model, usage=usage, cost=cost))
            total = total.merge(cost)
        return CostRollup(cost=total, lines=tuple(lines))

    if raw_usage.all_tokens > 0:
        if not fallback_model:
            raise ValueError("fallback_model is required to price usage without model data")
        logger.debug("No model breakdown, pricing %d tokens as %s",
                     raw_usage.all_tokens, fallback_model)
        cost = cost_fn(raw_usage, fallback_model)
        line = ModelCostLine(model=fallback_model, usage=raw_usage, cost=cost, is_fallback=True)
        return CostRollup(cost=cost, lines=(line,), used_fallback=True)

    return CostRollup(cost=ZERO_COST, lines=())
