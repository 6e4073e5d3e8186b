"""
Canonical usage totals and record normalization.

Counter hashes written by older schema versions use prefixed field names
(``totalInputTokens``); newer writers use the bare names (``inputTokens``).
Both are folded into one UsageTotals shape here.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterable, Mapping, Optional


# canonical attribute -> (current field, legacy field)
FIELD_NAMES = {
    "requests": ("requests", "totalRequests"),
    "input_tokens": ("inputTokens", "totalInputTokens"),
    "output_tokens": ("outputTokens", "totalOutputTokens"),
    "cache_create_tokens": ("cacheCreateTokens", "totalCacheCreateTokens"),
    "cache_read_tokens": ("cacheReadTokens", "totalCacheReadTokens"),
    "all_tokens": ("allTokens", "totalAllTokens"),
}


@dataclass(frozen=True)
class UsageTotals:
    """Summed usage counters for one entity over one window.

    ``all_tokens`` equals the sum of the four token fields when derived from
    model-level data; otherwise it is the aggregate the writer stored.
    """
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_create_tokens: int = 0
    cache_read_tokens: int = 0
    all_tokens: int = 0

    @property
    def tokens(self) -> int:
        """Alias kept for dashboards that read ``tokens``."""
        return self.all_tokens

    @property
    def component_tokens(self) -> int:
        """Sum of the four token classes."""
        return (self.input_tokens + self.output_tokens
                + self.cache_create_tokens + self.cache_read_tokens)

    @property
    def is_zero(self) -> bool:
        return all(getattr(self, f.name) == 0 for f in fields(self))

    def merge(self, other: "UsageTotals") -> "UsageTotals":
        """Field-wise sum; associative and commutative, zero is the identity."""
        return UsageTotals(**{
            f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)
        })

    __add__ = merge

    def as_dict(self) -> Dict[str, int]:
        """Export in the camelCase shape used by reports."""
        return {
            "requests": self.requests,
            "tokens": self.tokens,
            "allTokens": self.all_tokens,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreateTokens": self.cache_create_tokens,
            "cacheReadTokens": self.cache_read_tokens,
        }


ZERO_USAGE = UsageTotals()


def merge_totals(items: Iterable[UsageTotals]) -> UsageTotals:
    """Sum any number of totals, starting from zero."""
    result = ZERO_USAGE
    for item in items:
        result = result.merge(item)
    return result


def _to_count(value: Any) -> Optional[int]:
    """Parse a stored counter; None when absent, unparseable or negative."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    try:
        number = int(value)
    except (TypeError, ValueError):
        try:
            number = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None
    return number if number >= 0 else None


def _pick(data: Mapping[str, Any], current: str, legacy: str) -> Optional[int]:
    value = _to_count(data.get(current))
    if value is None:
        value = _to_count(data.get(legacy))
    return value


def normalize_usage_hash(data: Optional[Mapping[str, Any]]) -> UsageTotals:
    """Convert a raw counter hash into canonical totals.

    Precedence per field: current name, then legacy ``total*`` name, then 0.
    A stored ``allTokens`` is trusted when positive; otherwise it is
    recomputed from the four token fields. Never raises: anything that is
    not a mapping normalizes to zero.

    Args:
        data: Hash as returned by the counter store (may be None or empty)

    Returns:
        UsageTotals for the record
    """
    if not data or not isinstance(data, Mapping):
        return ZERO_USAGE

    totals = UsageTotals(**{
        attr: _pick(data, current, legacy) or 0
        for attr, (current, legacy) in FIELD_NAMES.items()
    })
    if totals.all_tokens <= 0:
        totals = replace(totals, all_tokens=totals.component_tokens)
    return totals
