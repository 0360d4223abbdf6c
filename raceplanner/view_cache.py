from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ViewCache:
    """Keeps rendered read-model payloads per path until something invalidates them."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, Any] = {}

    def get_or_compute(self, path: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            if path in self._entries:
                return self._entries[path]
        value = factory()
        with self._lock:
            self._entries[path] = value
        return value

    def invalidate(self, *paths: str) -> None:
        with self._lock:
            for path in paths:
                if self._entries.pop(path, None) is not None:
                    logger.debug("invalidated cached view %s", path)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._entries
