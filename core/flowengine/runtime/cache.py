"""In-memory TTL/LRU cache for node instances shared across executions."""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def inputs_digest(inputs: dict[str, Any]) -> str:
    """Stable digest of resolved node inputs."""
    encoded = json.dumps(inputs, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


class TTLCache:
    """
    Bounded cache with per-entry expiry.

    Entries expire ``ttl_seconds`` after they were set; when ``max_size`` is
    reached the least recently used entry is evicted. Not thread-safe; one
    event loop owns it.
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl_seconds: float | None = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float | None, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        expires_at, value = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        expires_at = self._clock() + self.ttl_seconds if self.ttl_seconds else None
        self._entries[key] = (expires_at, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cache entry {evicted}")

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key, _ABSENT) is not _ABSENT

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}


_ABSENT = object()
