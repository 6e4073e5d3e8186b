"""
Usage aggregation public API.

Resolves a time range, reads the matching buckets in pipelined round trips,
normalizes them and rolls up cost. Stateless between calls and read-only,
so one aggregator can serve many threads.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .cost import CostFunction, ModelCostLine, rollup_costs
from .errors import InvalidRange
from .keys import Dimension, is_valid_entity_id
from .pricing import CostBreakdown, ZERO_COST, calculate_cost, format_cost
from .ranges import DateLike, RangeResolver, RangeMode, ResolvedRange, TimeRangeSpec
from .usage import UsageTotals, ZERO_USAGE, merge_totals
from usage_rollup.config.loader import EngineConfig
from usage_rollup.storage.db import get_client
from usage_rollup.storage.models import ModelUsageBucket, UsageBucket
from usage_rollup.storage.reader import BatchedReader
from usage_rollup.storage.store import CounterStore, RedisCounterStore

logger = logging.getLogger(__name__)

DimensionLike = Union[Dimension, str]
RangeLike = Union[TimeRangeSpec, str]

HOURLY_TREND_MAX_HOURS = 24


@dataclass(frozen=True)
class UsageResult:
    """Usage totals and cost of one entity over one range."""
    entity_id: str
    dimension: Dimension
    totals: UsageTotals
    cost: CostBreakdown
    used_fallback_pricing: bool = False

    def as_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = dict(self.totals.as_dict())
        data["cost"] = float(self.cost.total)
        data["formattedCost"] = format_cost(self.cost.total)
        data["costs"] = {
            "input": float(self.cost.input),
            "output": float(self.cost.output),
            "cacheWrite": float(self.cost.cache_write),
            "cacheRead": float(self.cost.cache_read),
            "total": float(self.cost.total),
        }
        return data


@dataclass(frozen=True)
class TrendPoint:
    """One day or hour of a usage trend; ``date`` is the bucket period key."""
    date: str
    label: str
    usage: UsageTotals
    cost: CostBreakdown


@dataclass(frozen=True)
class TrendSummary:
    """Totals, daily averages and peaks over a trend window."""
    days: int
    totals: UsageTotals
    total_cost: Decimal
    avg_daily_cost: Decimal
    avg_daily_requests: float
    avg_daily_tokens: float
    highest_cost_day: Optional[TrendPoint]
    highest_request_day: Optional[TrendPoint]


@dataclass(frozen=True)
class UsageTrend:
    """Daily usage series of one entity with a summary."""
    entity_id: str
    dimension: Dimension
    points: Tuple[TrendPoint, ...]
    summary: TrendSummary


def _as_dimension(value: DimensionLike) -> Dimension:
    if isinstance(value, Dimension):
        return value
    try:
        return Dimension(value)
    except ValueError:
        valid = [d.value for d in Dimension]
        raise ValueError(f"Unknown dimension {value!r}, expected one of: {valid}")


def _as_range(value: RangeLike) -> TimeRangeSpec:
    if isinstance(value, TimeRangeSpec):
        return value
    return TimeRangeSpec.parse(value)


def _check_entity(entity_id: str) -> None:
    if not is_valid_entity_id(entity_id):
        raise ValueError(f"Invalid entity id: {entity_id!r}")


def _as_instant(value: Optional[DateLike]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _trend_label(period: str) -> str:
    """``MM/DD`` for day keys, ``MM/DD HH:00`` for hour keys."""
    label = f"{period[5:7]}/{period[8:10]}"
    if len(period) > 10:
        label += f" {period[11:13]}:00"
    return label


class UsageAggregator:
    """Aggregates usage counters into totals and cost for keys and accounts."""

    def __init__(
        self,
        store: CounterStore,
        config: Optional[EngineConfig] = None,
        cost_fn: Optional[CostFunction] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the aggregator.

        Args:
            store: Counter store to read from
            config: Engine configuration (defaults apply when omitted)
            cost_fn: Pricing calculator ``cost_fn(usage, model)``; defaults to
                the built-in table extended with configured overrides
            clock: Source of "now", injectable for tests
        """
        self.config = config or EngineConfig()
        self.resolver = RangeResolver(
            timezone_offset_hours=self.config.timezone_offset_hours,
            max_range_days=self.config.max_range_days,
        )
        self.reader = BatchedReader(store)
        self.cost_fn = cost_fn or partial(calculate_cost, table=self.config.pricing_table())
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, config: EngineConfig) -> "UsageAggregator":
        """Build an aggregator reading from the configured redis store."""
        client = get_client(config.store.url, config.store.timeout_seconds)
        return cls(RedisCounterStore(client), config=config)

    def get_usage(
        self,
        entity_id: str,
        dimension: DimensionLike,
        range_spec: RangeLike,
        now: Optional[datetime] = None,
        family: Optional[str] = None,
    ) -> UsageResult:
        """Usage totals and cost of one entity, for detail views.

        Args:
            entity_id: API key or account id
            dimension: ``Dimension`` or its string value
            range_spec: ``TimeRangeSpec`` or a selector such as ``"7days"``
            now: Override for the current instant
            family: Product family of the entity, such as ``gemini``,
                used to pick the fallback model

        Returns:
            UsageResult with totals and summed cost

        Raises:
            InvalidRange: If a custom range starts after it ends
            RangeTooLarge: If a custom range is too long
            StoreUnavailable: If the counter store fails
        """
        dimension = _as_dimension(dimension)
        _check_entity(entity_id)
        resolved = self.resolver.resolve(_as_range(range_spec), now or self.clock())

        totals = self._sum_entity(entity_id, dimension,
                                  self.reader.read_usage([entity_id], dimension, resolved))
        model_buckets = self._read_models(entity_id, dimension, resolved)
        rollup = rollup_costs(model_buckets, totals,
                              self.config.fallback_model(dimension, family), self.cost_fn)

        logger.debug("Usage for %s %s over %d buckets: %d requests, cost %s",
                     dimension.value, entity_id, max(len(resolved.period_keys), 1),
                     totals.requests, rollup.cost.total)
        return UsageResult(
            entity_id=entity_id,
            dimension=dimension,
            totals=totals,
            cost=rollup.cost,
            used_fallback_pricing=rollup.used_fallback,
        )

    def get_usage_batch(
        self,
        entity_ids: Iterable[str],
        dimension: DimensionLike,
        range_spec: RangeLike,
        now: Optional[datetime] = None,
    ) -> Dict[str, UsageTotals]:
        """Usage totals of many entities without cost, for list views.

        All entities and periods are read in one pipelined round trip. An
        entity whose rows cannot be normalized reports zero usage instead of
        failing the batch.

        Raises:
            InvalidRange: If a custom range starts after it ends
            RangeTooLarge: If a custom range is too long
            StoreUnavailable: If the counter store fails
        """
        entity_ids = list(entity_ids)
        if not entity_ids:
            return {}
        dimension = _as_dimension(dimension)
        resolved = self.resolver.resolve(_as_range(range_spec), now or self.clock())

        buckets = self.reader.read_usage(entity_ids, dimension, resolved)
        return {
            entity_id: self._sum_entity(entity_id, dimension, buckets)
            for entity_id in entity_ids
        }

    def get_usage_trend(
        self,
        entity_id: str,
        dimension: DimensionLike,
        days: int = 30,
        now: Optional[datetime] = None,
        granularity: str = "day",
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        family: Optional[str] = None,
    ) -> UsageTrend:
        """Usage and cost of one entity per day or per hour.

        Day trends cover ``start``..``end`` when both are given, otherwise the
        last ``days`` days, clamped to [1, trend_max_days]. Hour trends cover
        ``start``..``end`` (default: the last 24 hours) and may not span more
        than 24 hours. Each point is costed on its own, including the fallback
        model for points without model data.

        Raises:
            InvalidRange: If the granularity is unknown or the window is reversed
            RangeTooLarge: If the window is too long
            StoreUnavailable: If the counter store fails
        """
        dimension = _as_dimension(dimension)
        _check_entity(entity_id)
        resolved = self._resolve_trend(days, now or self.clock(), granularity, start, end)

        buckets = self.reader.read_usage([entity_id], dimension, resolved).get(entity_id, [])
        model_buckets = self._read_models(entity_id, dimension, resolved)

        usage_by_period: Dict[str, UsageTotals] = {b.period_key: b.usage for b in buckets}
        models_by_period: Dict[str, List[ModelUsageBucket]] = {}
        for bucket in model_buckets:
            models_by_period.setdefault(bucket.period_key, []).append(bucket)

        fallback_model = self.config.fallback_model(dimension, family)
        points = []
        for period in resolved.period_keys:
            usage = usage_by_period.get(period, ZERO_USAGE)
            rollup = rollup_costs(models_by_period.get(period, []), usage,
                                  fallback_model, self.cost_fn)
            points.append(TrendPoint(
                date=period,
                label=_trend_label(period),
                usage=usage,
                cost=rollup.cost,
            ))

        return UsageTrend(
            entity_id=entity_id,
            dimension=dimension,
            points=tuple(points),
            summary=self._summarize(points),
        )

    def get_model_breakdown(
        self,
        entity_id: str,
        dimension: DimensionLike,
        range_spec: RangeLike,
        now: Optional[datetime] = None,
        family: Optional[str] = None,
    ) -> List[ModelCostLine]:
        """Per-model usage and cost of one entity, largest token count first.

        When the window has usage but no model data, the single fallback line
        is returned with ``is_fallback`` set.
        """
        dimension = _as_dimension(dimension)
        _check_entity(entity_id)
        resolved = self.resolver.resolve(_as_range(range_spec), now or self.clock())

        totals = self._sum_entity(entity_id, dimension,
                                  self.reader.read_usage([entity_id], dimension, resolved))
        model_buckets = self._read_models(entity_id, dimension, resolved)
        rollup = rollup_costs(model_buckets, totals,
                              self.config.fallback_model(dimension, family), self.cost_fn)
        return sorted(rollup.lines, key=lambda line: line.usage.all_tokens, reverse=True)

    def resolve(self, range_spec: RangeLike, now: Optional[datetime] = None,
                mode: RangeMode = RangeMode.SINGLE_BUCKET) -> ResolvedRange:
        """Expose range resolution so callers can label results."""
        return self.resolver.resolve(_as_range(range_spec), now or self.clock(), mode)

    def _resolve_trend(self, days: int, now: datetime, granularity: str,
                       start: Optional[DateLike], end: Optional[DateLike]) -> ResolvedRange:
        granularity = (granularity or "day").strip().lower()
        if granularity == "hour":
            return self.resolver.hourly_series(
                _as_instant(start), _as_instant(end), now, max_hours=HOURLY_TREND_MAX_HOURS)
        if granularity != "day":
            raise InvalidRange(f"Unknown trend granularity {granularity!r}, expected day or hour")
        if start is not None or end is not None:
            return self.resolver.resolve(TimeRangeSpec.custom(start, end), now)
        days = min(max(int(days), 1), self.config.trend_max_days)
        return self.resolver.daily_series(days, now)

    def _read_models(self, entity_id: str, dimension: Dimension,
                     resolved: ResolvedRange) -> List[ModelUsageBucket]:
        keys = self.reader.discover_model_keys(entity_id, dimension, resolved)
        return self.reader.read_model_buckets(keys)

    @staticmethod
    def _sum_entity(entity_id: str, dimension: Dimension,
                    buckets: Dict[str, List[UsageBucket]]) -> UsageTotals:
        try:
            return merge_totals(b.usage for b in buckets.get(entity_id, []))
        except Exception as e:
            logger.warning("Could not sum usage of %s %s, reporting zero: %s",
                           dimension.value, entity_id, e)
            return ZERO_USAGE

    @staticmethod
    def _summarize(points: List[TrendPoint]) -> TrendSummary:
        days = len(points)
        totals = merge_totals(p.usage for p in points)
        total_cost = sum((p.cost.total for p in points), ZERO_COST.total)

        highest_cost = None
        highest_requests = None
        for point in points:
            if highest_cost is None or point.cost.total > highest_cost.cost.total:
                highest_cost = point
            if highest_requests is None or point.usage.requests > highest_requests.usage.requests:
                highest_requests = point

        return TrendSummary(
            days=days,
            totals=totals,
            total_cost=total_cost,
            avg_daily_cost=total_cost / days if days else ZERO_COST.total,
            avg_daily_requests=totals.requests / days if days else 0.0,
            avg_daily_tokens=totals.all_tokens / days if days else 0.0,
            highest_cost_day=highest_cost,
            highest_request_day=highest_requests,
        )
