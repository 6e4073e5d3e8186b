"""
Shared fixtures for usage rollup tests.
"""

from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Sequence

import pytest

from usage_rollup.core.errors import StoreUnavailable
from usage_rollup.storage.store import CounterStore, StoreOp


class FakeCounterStore(CounterStore):
    """Dict-backed counter store that records every round trip."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(data or {})
        self.calls: List[tuple] = []
        self.unavailable = False

    def _round_trip(self, name: str, size: int = 1) -> None:
        if self.unavailable:
            raise StoreUnavailable(f"store down during {name}")
        self.calls.append((name, size))

    def get(self, key: str) -> Optional[str]:
        self._round_trip("get")
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def hgetall(self, key: str) -> Dict[str, str]:
        self._round_trip("hgetall")
        value = self.data.get(key)
        return dict(value) if isinstance(value, dict) else {}

    def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        if not ops:
            return []
        self._round_trip("pipeline", len(ops))
        results = []
        for op in ops:
            value = self.data.get(op.key)
            if op.command == "hgetall":
                results.append(dict(value) if isinstance(value, dict) else {})
            else:
                results.append(value if isinstance(value, str) else None)
        return results

    def scan_keys(self, pattern: str) -> List[str]:
        self._round_trip("scan")
        return [key for key in self.data if fnmatchcase(key, pattern)]

    @property
    def round_trips(self) -> int:
        return len(self.calls)


@pytest.fixture
def store():
    """Empty fake counter store."""
    return FakeCounterStore()


@pytest.fixture
def now():
    """2024-05-15 04:00 UTC, which is 12:00 on the same day at UTC+8."""
    return datetime(2024, 5, 15, 4, 0, 0, tzinfo=timezone.utc)
