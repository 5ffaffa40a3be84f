"""TTL Cache - key/value cache where every entry carries its own time-to-live."""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from clickguard.config import config
from clickguard.optimization.models import CacheEntry


logger = logging.getLogger(__name__)


# Returned by get() on a miss so that None, 0 and [] stay cacheable
MISSING = object()


class TTLCache:
    """
    In-process TTL cache.
    
    Expired entries are dropped lazily on read and in bulk by purge_expired().
    The clock is injectable so tests can expire entries without sleeping.
    """
    
    def __init__(
        self,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.
        
        Args:
            default_ttl: Seconds an entry lives when set() gets no ttl
            clock: Monotonic seconds
        """
        self.default_ttl = default_ttl if default_ttl is not None else config.default_cache_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
    
    def get(self, key: str, default: Any = MISSING) -> Any:
        """Value for key, or `default` if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return default
            return entry.value
    
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
    
    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None
    
    def keys(self) -> List[str]:
        """Keys of live (unexpired) entries."""
        now = self._clock()
        with self._lock:
            return [key for key, entry in self._entries.items() if entry.expires_at > now]
    
    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)
    
    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
    
    def __len__(self) -> int:
        return len(self.keys())
    
    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISSING
