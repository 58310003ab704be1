"""
Result Cache — in-memory TTL cache for upstream campaign data.
Expired entries read as misses and are dropped on access; nothing else is evicted.
"""

import time
from typing import Any, Callable


class _Miss:
    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def campaign_data_key(account_id: Any, start: Any, end: Any) -> str:
    return f"campaign_data:{account_id}:{start}:{end}"


class ResultCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return MISS
        return value

    def put(self, key: str, value: Any, ttl_minutes: float) -> None:
        self._entries[key] = (value, self._clock() + ttl_minutes * 60)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
