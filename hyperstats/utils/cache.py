from __future__ import annotations

import time
from typing import Any, Callable, Dict, Tuple


class TTLCache:
    """Key -> value store whose entries expire `ttl_s` seconds after being set.

    The clock is injected so expiry can be driven without sleeping.
    """

    def __init__(
        self,
        ttl_s: float,
        clock: Callable[[], float] = time.monotonic,
        max_age_s: float | None = None,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_age_s = max_age_s if max_age_s is not None else ttl_s * 5
        self.clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self.clock() - stored_at >= self.ttl_s:
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        now = self.clock()
        self._entries[key] = (value, now)
        self._evict(now)

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self, now: float) -> None:
        expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at > self.max_age_s]
        for key in expired:
            del self._entries[key]
