"""
Data models for storage layer.

Read-only views of the counter buckets owned by the relay write path.
"""

from dataclasses import dataclass
from typing import Optional

from usage_rollup.core.keys import Dimension, Granularity
from usage_rollup.core.usage import UsageTotals


@dataclass(frozen=True)
class UsageBucket:
    """Counters of one entity for one period.

    Lifetime (running-total) buckets have no granularity or period key.
    Absent store keys are represented as buckets with zero usage.
    """
    dimension: Dimension
    entity_id: str
    granularity: Optional[Granularity]
    period_key: Optional[str]
    usage: UsageTotals


@dataclass(frozen=True)
class ModelUsageBucket:
    """Counters of one entity, one period and one model; used for cost only."""
    dimension: Dimension
    entity_id: str
    granularity: Granularity
    period_key: str
    model_name: str
    usage: UsageTotals
