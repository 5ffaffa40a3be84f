"""Enrichment Cache - two-tier cache of IP enrichment records.

Tier 1 is a bounded in-process map that evicts the earliest-inserted entry
when full (insertion order, not access order). Tier 2 is the durable store,
upserted by IP. A hit from either tier only counts while it is younger
than the freshness horizon.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional, Protocol

from clickguard.config import config
from clickguard.enrichment.models import EnrichmentSource, IPEnrichment


logger = logging.getLogger(__name__)


class EnrichmentRepository(Protocol):
    """Durable upsert-by-IP store consulted when the memory tier misses."""
    
    async def get_enrichment(self, ip: str) -> Optional[IPEnrichment]:
        ...
    
    async def upsert_enrichment(self, enrichment: IPEnrichment) -> None:
        ...


def utc_now() -> datetime:
    return datetime.now(UTC)


class EnrichmentCache:
    """
    Two-tier enrichment cache with write-through.
    
    Note: a durable-store failure never fails the caller; the memory tier
    still holds the record.
    """
    
    def __init__(
        self,
        repository: Optional[EnrichmentRepository] = None,
        max_entries: Optional[int] = None,
        ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the cache.
        
        Args:
            repository: Durable tier (None = memory only)
            max_entries: Memory tier capacity
            ttl: Freshness horizon for both tiers
            clock: Returns the current UTC time
        """
        self.repository = repository
        self.max_entries = max_entries or config.enrichment_cache_size
        self.ttl = ttl or timedelta(hours=config.enrichment_ttl_hours)
        self._clock = clock
        self._entries: "OrderedDict[str, IPEnrichment]" = OrderedDict()
        self._lock = threading.Lock()
    
    def __len__(self) -> int:
        return len(self._entries)
    
    def __contains__(self, ip: str) -> bool:
        return ip in self._entries
    
    def keys(self) -> list[str]:
        """Memory tier keys, oldest insertion first."""
        with self._lock:
            return list(self._entries.keys())
    
    def is_fresh(self, enrichment: IPEnrichment) -> bool:
        return self._clock() - enrichment.enriched_at < self.ttl
    
    def get_from_memory(self, ip: str) -> Optional[IPEnrichment]:
        """Fresh memory-tier hit or None. Expired entries are dropped."""
        with self._lock:
            cached = self._entries.get(ip)
            if cached is None:
                return None
            if not self.is_fresh(cached):
                del self._entries[ip]
                return None
        return cached.model_copy(update={"source": EnrichmentSource.MEMORY_CACHE})
    
    def save_to_memory(self, enrichment: IPEnrichment) -> None:
        """Insert into the memory tier, evicting the earliest insertion when over capacity."""
        with self._lock:
            # A refreshed record counts as a new insertion
            self._entries.pop(enrichment.ip, None)
            self._entries[enrichment.ip] = enrichment
            
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Enrichment cache full, evicted {evicted}")
    
    async def get(self, ip: str) -> Optional[IPEnrichment]:
        """
        Look an IP up in memory, then in the durable store.
        
        Returns:
            Fresh record tagged with the tier it came from, or None on miss
        """
        cached = self.get_from_memory(ip)
        if cached is not None:
            logger.debug(f"Enrichment memory hit: {ip}")
            return cached
        
        if self.repository is None:
            return None
        
        try:
            stored = await self.repository.get_enrichment(ip)
        except Exception as e:
            logger.warning(f"Enrichment store read failed for {ip}: {e}")
            return None
        
        if stored is None or not self.is_fresh(stored):
            return None
        
        logger.debug(f"Enrichment store hit: {ip}")
        self.save_to_memory(stored)
        return stored.model_copy(update={"source": EnrichmentSource.STORE_CACHE})
    
    async def put(self, enrichment: IPEnrichment) -> bool:
        """
        Write a record through both tiers.
        
        Returns:
            True if the durable write succeeded (or there is no durable tier)
        """
        self.save_to_memory(enrichment)
        
        if self.repository is None:
            return True
        
        try:
            await self.repository.upsert_enrichment(enrichment)
        except Exception as e:
            logger.error(f"Error saving enrichment for {enrichment.ip}: {e}")
            return False
        return True
    
    def clear(self) -> None:
        """Clear the memory tier."""
        with self._lock:
            self._entries.clear()
