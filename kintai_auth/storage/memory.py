from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from kintai_auth.logging import get_logger
from kintai_auth.storage.errors import BackendUnavailable


class MemoryBackend:
    """Process-local key/value store that vanishes with its owner.

    One instance stands for one tab ("tab" scope) or one window
    ("window" scope). ``available=False`` models a store the browser refuses
    to provide, and ``wipe()`` models a store cleared by browser policy.
    """

    def __init__(
        self,
        scope: str = "tab",
        *,
        available: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = f"memory:{scope}"
        self.scope = scope
        self.available = available
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _ensure_available(self) -> None:
        if not self.available:
            raise BackendUnavailable(f"{self.name} is disabled", backend=self.name)

    async def get(self, key: str) -> Optional[str]:
        self._ensure_available()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                self._data.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        self._ensure_available()
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._ensure_available()
        with self._lock:
            self._data.pop(key, None)

    def wipe(self) -> None:
        with self._lock:
            self._data.clear()
        self.logger.debug("memory_backend_wiped", backend=self.name)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())


__all__ = ["MemoryBackend"]
