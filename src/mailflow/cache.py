from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

Clock = Callable[[], float]


class ResponseCache:
    """Per-workflow cache for collaborator responses keyed by request parameters."""

    def __init__(self, ttl_seconds: float = 300.0, *, clock: Clock = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(namespace: str, params: dict[str, Any]) -> str:
        rendered = json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
        return f"{namespace}:{rendered}"

    def get(self, namespace: str, params: dict[str, Any]) -> tuple[bool, Any]:
        key = self.make_key(namespace, params)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return False, None
        self.hits += 1
        return True, value

    def set(self, namespace: str, params: dict[str, Any], value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        key = self.make_key(namespace, params)
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    async def get_or_fetch(
        self,
        namespace: str,
        params: dict[str, Any],
        fetch: Callable[[], Awaitable[Any]],
    ) -> Any:
        found, value = self.get(namespace, params)
        if found:
            return value
        value = await fetch()
        self.set(namespace, params, value)
        return value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
