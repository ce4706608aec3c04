import threading
from typing import Callable, Dict, List, Optional

from .logging_config import get_logger
from .models import CacheEntry

logger = get_logger(__name__)


class CacheStore:
    """In-process key -> CacheEntry map; entries are replaced, never mutated."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry
        logger.info("cache_set", key=entry.key, computed_at=entry.computed_at.isoformat())

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info("cache_invalidated", key=key)
        return removed

    def invalidate_if(self, key: str, entry: CacheEntry) -> bool:
        """Drop ``key`` only if it still holds ``entry``."""
        with self._lock:
            if self._entries.get(key) is not entry:
                return False
            del self._entries[key]
            return True

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("cache_cleared", entries_cleared=count)
        return count

    def purge(self, predicate: Callable[[CacheEntry], bool]) -> List[str]:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("cache_purged", keys=doomed)
        return doomed

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def snapshot(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
