"""
Batched reads of usage buckets.

Every aggregation call costs a constant number of store round trips: one
pipeline for the raw buckets of all entities and periods, one discovery scan
for model sub-buckets, and one pipeline for their values.
"""

import logging
from typing import Dict, List, Sequence, Set

from .models import ModelUsageBucket, UsageBucket
from .store import CounterStore
from usage_rollup.core.keys import (
    Dimension,
    Granularity,
    is_valid_entity_id,
    make_key,
    make_lifetime_key,
    model_key_pattern,
    parse_key,
)
from usage_rollup.core.ranges import ResolvedRange
from usage_rollup.core.usage import normalize_usage_hash

logger = logging.getLogger(__name__)


def _unique(ids: Sequence[str]) -> List[str]:
    seen: Set[str] = set()
    result = []
    for entity_id in ids:
        if entity_id not in seen:
            seen.add(entity_id)
            result.append(entity_id)
    return result


class BatchedReader:
    """Reads raw and per-model usage buckets through a counter store."""

    def __init__(self, store: CounterStore):
        self.store = store

    def read_usage(
        self,
        entity_ids: Sequence[str],
        dimension: Dimension,
        resolved: ResolvedRange,
    ) -> Dict[str, List[UsageBucket]]:
        """Fetch the raw buckets of many entities in one pipelined round trip.

        Absent keys come back as zero-usage buckets. An entity whose rows
        cannot be turned into buckets is logged and left with no buckets,
        which reads as zero usage; the other entities are unaffected.

        Args:
            entity_ids: Keys or accounts to read
            dimension: Scope of the ids
            resolved: Buckets to read per entity

        Returns:
            Buckets per entity id, ordered like ``resolved.period_keys``

        Raises:
            StoreUnavailable: If the store round trip fails
        """
        ids = _unique(entity_ids)
        if not ids:
            return {}

        result: Dict[str, List[UsageBucket]] = {}
        for entity_id in ids:
            if not is_valid_entity_id(entity_id):
                logger.warning("Skipping malformed %s id %r", dimension.value, entity_id)
                result[entity_id] = []
        ids = [entity_id for entity_id in ids if entity_id not in result]
        if not ids:
            return result

        if resolved.is_lifetime:
            periods = [None]
            keys = [make_lifetime_key(dimension, entity_id) for entity_id in ids]
        else:
            periods = list(resolved.period_keys)
            keys = [
                make_key(dimension, entity_id, resolved.granularity, period)
                for period in periods
                for entity_id in ids
            ]

        rows = self.store.pipeline_hgetall(keys)

        for e_idx, entity_id in enumerate(ids):
            try:
                result[entity_id] = [
                    UsageBucket(
                        dimension=dimension,
                        entity_id=entity_id,
                        granularity=resolved.granularity,
                        period_key=period,
                        usage=normalize_usage_hash(rows[p_idx * len(ids) + e_idx]),
                    )
                    for p_idx, period in enumerate(periods)
                ]
            except Exception as e:
                logger.warning("Usage rows for %s %s could not be normalized, reporting zero: %s",
                               dimension.value, entity_id, e)
                result[entity_id] = []
        return result

    def discover_model_keys(
        self,
        entity_id: str,
        dimension: Dimension,
        resolved: ResolvedRange,
    ) -> List[str]:
        """Find the model sub-bucket keys of one entity for a resolved window.

        Issues a single discovery scan. Lifetime windows use the monthly
        model buckets of every month.
        """
        if resolved.is_lifetime:
            granularity = Granularity.MONTHLY
            wanted = None
        else:
            granularity = resolved.granularity
            wanted = set(resolved.period_keys)

        single_period = resolved.period_keys[0] if wanted and len(wanted) == 1 else None
        pattern = model_key_pattern(dimension, entity_id, granularity, single_period)

        keys = []
        for key in sorted(self.store.scan_keys(pattern)):
            parsed = parse_key(key)
            if (parsed is None or parsed.model_name is None
                    or parsed.dimension != dimension
                    or parsed.entity_id != entity_id
                    or parsed.granularity != granularity):
                continue
            if wanted is not None and parsed.period_key not in wanted:
                continue
            keys.append(key)
        return keys

    def read_model_buckets(self, keys: Sequence[str]) -> List[ModelUsageBucket]:
        """Fetch model sub-buckets in one pipelined round trip.

        Keys that vanished since discovery (empty hashes) are skipped.
        """
        parsed_keys = [(key, parse_key(key)) for key in keys]
        parsed_keys = [(key, parsed) for key, parsed in parsed_keys
                       if parsed is not None and parsed.model_name]
        if not parsed_keys:
            return []

        rows = self.store.pipeline_hgetall([key for key, _ in parsed_keys])
        buckets = []
        for (key, parsed), row in zip(parsed_keys, rows):
            if not row:
                continue
            buckets.append(ModelUsageBucket(
                dimension=parsed.dimension,
                entity_id=parsed.entity_id,
                granularity=parsed.granularity,
                period_key=parsed.period_key,
                model_name=parsed.model_name,
                usage=normalize_usage_hash(row),
            ))
        return buckets
