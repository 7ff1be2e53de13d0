"""A small thread-safe key/value cache."""

from __future__ import annotations

import threading
from typing import Any, Dict


class SafeCache:
    """Dictionary guarded by a lock so that handlers on many threads can share it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``."""
        with self._lock:
            self._data[key] = value

    def unset(self, key: str) -> None:
        """Remove ``key`` if present."""
        with self._lock:
            self._data.pop(key, None)

    def get(self, key: str) -> Any:
        """Return the value under ``key`` or ``None``."""
        with self._lock:
            return self._data.get(key)

    def snapshot(self) -> Dict[str, Any]:
        """Return a copy of the whole cache taken under the lock."""
        with self._lock:
            return dict(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)