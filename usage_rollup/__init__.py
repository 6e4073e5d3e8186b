"""
Usage Rollup.

Aggregates pooled-account usage counters into totals and cost for API keys
and upstream accounts.
"""

from usage_rollup.core.aggregator import UsageAggregator, UsageResult, UsageTrend
from usage_rollup.core.errors import InvalidRange, RangeTooLarge, StoreUnavailable
from usage_rollup.core.keys import Dimension
from usage_rollup.core.ranges import TimeRangeSpec

__all__ = [
    "UsageAggregator",
    "UsageResult",
    "UsageTrend",
    "InvalidRange",
    "RangeTooLarge",
    "StoreUnavailable",
    "Dimension",
    "TimeRangeSpec",
]
