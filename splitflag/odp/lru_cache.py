import logging
import threading

from collections import OrderedDict
from time import time
from typing import Any, Optional

from ..cache_interfaces import AbstractSegmentsCache

logger = logging.getLogger("splitflag.odp.lru_cache")


class CacheEntry(object):
    def __init__(self, value: Any) -> None:
        self.value = value
        self.created = time()

    def is_expired(self, timeout: float) -> bool:
        return timeout > 0 and time() - self.created >= timeout


class LRUCache(AbstractSegmentsCache):
    """Least-recently-used cache with a per-entry timeout.

    ``max_size <= 0`` disables the cache; ``timeout <= 0`` keeps entries
    until they are evicted.
    """

    def __init__(self, max_size: int, timeout: float) -> None:
        self.max_size = max_size
        self.timeout = timeout
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def save(self, key: str, value: Any) -> None:
        if self.max_size <= 0:
            return
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key, last=False)
            elif len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=True)
                logger.debug("Evicted %s from segments cache", evicted)
            self._entries[key] = CacheEntry(value)
            self._entries.move_to_end(key, last=False)

    def lookup(self, key: str) -> Optional[Any]:
        if self.max_size <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self.timeout):
                del self._entries[key]
                return None
            self._entries.move_to_end(key, last=False)
            return entry.value

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def peek(self, key: str) -> Optional[Any]:
        """Return a value without promoting it or checking its timeout."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self):
        """Keys from most to least recently used."""
        with self._lock:
            return list(self._entries.keys())
