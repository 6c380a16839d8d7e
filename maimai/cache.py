"""Time-to-live cache for tool results."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    value: Any
    expires_at: float


def make_cache_key(tool_name: str, arguments: Mapping[str, Any] | None) -> str | None:
    """Build a deterministic key from the tool name and its arguments.

    Returns None when the arguments cannot be serialized; callers treat that as
    an uncacheable call.
    """
    try:
        payload = json.dumps(
            dict(arguments or {}),
            sort_keys=True,
            ensure_ascii=False,
            separators=(",", ":"),
        )
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Cannot build cache key for tool %s: %s", tool_name, exc)
        return None
    return f"{tool_name}:{payload}"


class ResultCache:
    """Keyed TTL cache safe for concurrent get/set."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the live value for key, or None on a miss."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now > entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        entry = CacheEntry(value=value, expires_at=self._clock() + self._ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
