"""
Bucket key scheme for usage counters.

Maps (dimension, entity, granularity, period[, model]) to store keys and back.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple


class Dimension(Enum):
    """Entity a usage bucket is scoped to."""
    API_KEY = "api_key"
    ACCOUNT = "account"


class Granularity(Enum):
    """Time-bucket width."""
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


_PREFIXES: Dict[Dimension, str] = {
    Dimension.API_KEY: "usage",
    Dimension.ACCOUNT: "account_usage",
}

_PERIOD_PATTERNS: Dict[Granularity, str] = {
    Granularity.HOURLY: r"\d{4}-\d{2}-\d{2}:\d{2}",
    Granularity.DAILY: r"\d{4}-\d{2}-\d{2}",
    Granularity.MONTHLY: r"\d{4}-\d{2}",
}

_ENTITY = r"([^:]+)"


@dataclass(frozen=True)
class BucketKey:
    """Parsed components of a bucket key.

    ``granularity`` and ``period_key`` are None for lifetime buckets;
    ``model_name`` is set only for model sub-buckets.
    """
    dimension: Dimension
    entity_id: str
    granularity: Optional[Granularity] = None
    period_key: Optional[str] = None
    model_name: Optional[str] = None

    @property
    def is_lifetime(self) -> bool:
        return self.granularity is None


def _compile_patterns() -> List[Tuple[Pattern, Dimension, Optional[Granularity], bool]]:
    patterns = []
    for granularity, period in _PERIOD_PATTERNS.items():
        g = granularity.value
        patterns.extend([
            (re.compile(rf"^usage:{_ENTITY}:model:{g}:(.+):({period})$"),
             Dimension.API_KEY, granularity, True),
            (re.compile(rf"^account_usage:model:{g}:{_ENTITY}:(.+):({period})$"),
             Dimension.ACCOUNT, granularity, True),
            (re.compile(rf"^usage:{g}:{_ENTITY}:({period})$"),
             Dimension.API_KEY, granularity, False),
            (re.compile(rf"^account_usage:{g}:{_ENTITY}:({period})$"),
             Dimension.ACCOUNT, granularity, False),
        ])
    patterns.extend([
        (re.compile(rf"^usage:{_ENTITY}$"), Dimension.API_KEY, None, False),
        (re.compile(rf"^account_usage:{_ENTITY}$"), Dimension.ACCOUNT, None, False),
    ])
    return patterns


_KEY_PATTERNS = _compile_patterns()


def is_valid_entity_id(entity_id: str) -> bool:
    return isinstance(entity_id, str) and bool(entity_id) and ":" not in entity_id


def _check_entity(entity_id: str) -> None:
    if not is_valid_entity_id(entity_id):
        raise ValueError(f"Invalid entity id: {entity_id!r}")


def _check_period(granularity: Granularity, period_key: str) -> None:
    if not re.fullmatch(_PERIOD_PATTERNS[granularity], period_key or ""):
        raise ValueError(f"Invalid {granularity.value} period key: {period_key!r}")


def make_key(
    dimension: Dimension,
    entity_id: str,
    granularity: Granularity,
    period_key: str,
) -> str:
    """Build the store key of a raw usage bucket.

    Args:
        dimension: API key or account scope
        entity_id: Key or account identifier (must not contain ':')
        granularity: Bucket width
        period_key: Period string matching the granularity format

    Returns:
        Store key, e.g. ``usage:daily:k1:2024-05-01``

    Raises:
        ValueError: If entity_id or period_key is malformed
    """
    _check_entity(entity_id)
    _check_period(granularity, period_key)
    return f"{_PREFIXES[dimension]}:{granularity.value}:{entity_id}:{period_key}"


def make_lifetime_key(dimension: Dimension, entity_id: str) -> str:
    """Build the key of the running-total bucket of an entity."""
    _check_entity(entity_id)
    return f"{_PREFIXES[dimension]}:{entity_id}"


def make_model_key(
    dimension: Dimension,
    entity_id: str,
    granularity: Granularity,
    model_name: str,
    period_key: str,
) -> str:
    """Build the store key of a per-model usage sub-bucket."""
    _check_entity(entity_id)
    _check_period(granularity, period_key)
    if not model_name:
        raise ValueError("model_name cannot be empty")
    g = granularity.value
    if dimension == Dimension.API_KEY:
        return f"usage:{entity_id}:model:{g}:{model_name}:{period_key}"
    return f"account_usage:model:{g}:{entity_id}:{model_name}:{period_key}"


def model_key_pattern(
    dimension: Dimension,
    entity_id: str,
    granularity: Granularity,
    period_key: Optional[str] = None,
) -> str:
    """Glob pattern matching the model sub-buckets of one entity.

    Restricted to a single period when ``period_key`` is given, otherwise
    matching every period of the granularity.
    """
    _check_entity(entity_id)
    tail = period_key if period_key else "*"
    g = granularity.value
    if dimension == Dimension.API_KEY:
        return f"usage:{entity_id}:model:{g}:*:{tail}"
    return f"account_usage:model:{g}:{entity_id}:*:{tail}"


def parse_key(key: str) -> Optional[BucketKey]:
    """Parse a store key into its components.

    The keyspace is shared with unrelated data, so anything that does not
    follow the scheme yields None instead of raising.
    """
    if not isinstance(key, str):
        return None
    for pattern, dimension, granularity, is_model in _KEY_PATTERNS:
        match = pattern.match(key)
        if not match:
            continue
        if granularity is None:
            return BucketKey(dimension=dimension, entity_id=match.group(1))
        if is_model:
            return BucketKey(
                dimension=dimension,
                entity_id=match.group(1),
                granularity=granularity,
                period_key=match.group(3),
                model_name=match.group(2),
            )
        return BucketKey(
            dimension=dimension,
            entity_id=match.group(1),
            granularity=granularity,
            period_key=match.group(2),
        )
    return None
