"""
Counter store adapter.

Narrow read-only interface over the key-value store holding usage counters.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from redis.exceptions import ConnectionError, RedisError, TimeoutError

from usage_rollup.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

SCAN_COUNT = 1000


class StoreOp(NamedTuple):
    """One point read inside a pipeline."""
    command: str  # "get" or "hgetall"
    key: str


class CounterStore(ABC):
    """Read operations the aggregation engine consumes."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return a string value, or None when the key is absent."""

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]:
        """Return a hash, or an empty dict when the key is absent."""

    @abstractmethod
    def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        """Run many point reads in one round trip, preserving input order."""

    @abstractmethod
    def scan_keys(self, pattern: str) -> List[str]:
        """Enumerate keys matching a glob pattern; may be slow and approximate."""

    def pipeline_hgetall(self, keys: Sequence[str]) -> List[Dict[str, str]]:
        """Fetch many hashes in one round trip."""
        if not keys:
            return []
        return [row or {} for row in self.pipeline([StoreOp("hgetall", k) for k in keys])]


class RedisCounterStore(CounterStore):
    """Counter store backed by redis.

    Transport failures raise StoreUnavailable. A command error on a single
    key inside a pipeline (wrong type, for example) only blanks that row.
    """

    _COMMANDS = {"get", "hgetall"}

    def __init__(self, client):
        """Initialize the store with a redis client.

        Args:
            client: ``redis.Redis`` instance created with ``decode_responses=True``
        """
        self.client = client

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as e:
            raise self._unavailable("get", e) from e

    def hgetall(self, key: str) -> Dict[str, str]:
        try:
            return self.client.hgetall(key) or {}
        except RedisError as e:
            raise self._unavailable("hgetall", e) from e

    def pipeline(self, ops: Sequence[StoreOp]) -> List[Any]:
        if not ops:
            return []
        for op in ops:
            if op.command not in self._COMMANDS:
                raise ValueError(f"Unsupported pipeline command: {op.command}")

        try:
            pipe = self.client.pipeline(transaction=False)
            for op in ops:
                getattr(pipe, op.command)(op.key)
            results = pipe.execute(raise_on_error=False)
        except RedisError as e:
            raise self._unavailable("pipeline", e) from e

        rows = []
        for op, result in zip(ops, results):
            if isinstance(result, (ConnectionError, TimeoutError)):
                raise self._unavailable("pipeline", result) from result
            if isinstance(result, Exception):
                logger.warning("Pipeline %s on %s failed: %s", op.command, op.key, result)
                result = None
            rows.append(result)
        return rows

    def scan_keys(self, pattern: str) -> List[str]:
        try:
            return list(self.client.scan_iter(match=pattern, count=SCAN_COUNT))
        except RedisError as e:
            raise self._unavailable("scan", e) from e

    @staticmethod
    def _unavailable(operation: str, error: Exception) -> StoreUnavailable:
        logger.error("Counter store %s failed: %s", operation, error)
        return StoreUnavailable(f"Counter store unavailable during {operation}: {error}")
