"""Tests for the two-tier enrichment cache."""

import asyncio
from datetime import datetime, timedelta, UTC

from clickguard.enrichment import EnrichmentCache, EnrichmentSource, IPEnrichment, RiskLevel
from clickguard.storage import ClickStore, StoreError


class MutableClock:
    """UTC clock tests can move forward."""
    
    def __init__(self, start: datetime):
        self.now = start
    
    def __call__(self) -> datetime:
        return self.now
    
    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingRepository:
    """Durable tier whose writes always fail."""
    
    async def get_enrichment(self, ip):
        return None
    
    async def upsert_enrichment(self, enrichment):
        raise StoreError("disk I/O error")


def make_record(ip: str, enriched_at: datetime, **kwargs) -> IPEnrichment:
    values = dict(
        ip=ip,
        country="Germany",
        country_code="DE",
        city="Falkenstein",
        isp="Hetzner Online GmbH",
        org="Hetzner",
        is_hosting=True,
        risk_score=25,
        risk_level=RiskLevel.LOW,
        enriched_at=enriched_at,
    )
    values.update(kwargs)
    return IPEnrichment(**values)


class TestMemoryTier:
    """Test the bounded in-process tier."""
    
    def setup_method(self):
        """Set up test fixtures."""
        self.clock = MutableClock(datetime(2024, 5, 1, 12, 0, tzinfo=UTC))
        self.cache = EnrichmentCache(max_entries=3, ttl=timedelta(hours=24), clock=self.clock)
    
    def test_round_trip_within_ttl(self):
        record = make_record("5.9.1.1", self.clock())
        asyncio.run(self.cache.put(record))
        self.clock.advance(hours=23, minutes=59)
        
        cached = asyncio.run(self.cache.get("5.9.1.1"))
        
        assert cached is not None
        assert cached.source == EnrichmentSource.MEMORY_CACHE
        assert cached.model_dump(exclude={"source"}) == record.model_dump(exclude={"source"})
    
    def test_expired_entry_is_a_miss_and_dropped(self):
        asyncio.run(self.cache.put(make_record("5.9.1.1", self.clock())))
        self.clock.advance(hours=24, seconds=1)
        
        assert asyncio.run(self.cache.get("5.9.1.1")) is None
        assert "5.9.1.1" not in self.cache
    
    def test_evicts_earliest_insertion(self):
        for ip in ["1.0.0.1", "1.0.0.2", "1.0.0.3", "1.0.0.4"]:
            self.cache.save_to_memory(make_record(ip, self.clock()))
        
        assert len(self.cache) == 3
        assert self.cache.keys() == ["1.0.0.2", "1.0.0.3", "1.0.0.4"]
    
    def test_reads_do_not_change_eviction_order(self):
        for ip in ["1.0.0.1", "1.0.0.2", "1.0.0.3"]:
            self.cache.save_to_memory(make_record(ip, self.clock()))
        
        # Reading the oldest entry must not protect it
        assert self.cache.get_from_memory("1.0.0.1") is not None
        self.cache.save_to_memory(make_record("1.0.0.4", self.clock()))
        
        assert "1.0.0.1" not in self.cache
        assert self.cache.keys() == ["1.0.0.2", "1.0.0.3", "1.0.0.4"]
    
    def test_refresh_counts_as_new_insertion(self):
        for ip in ["1.0.0.1", "1.0.0.2", "1.0.0.3"]:
            self.cache.save_to_memory(make_record(ip, self.clock()))
        
        self.cache.save_to_memory(make_record("1.0.0.1", self.clock(), risk_score=40))
        self.cache.save_to_memory(make_record("1.0.0.4", self.clock()))
        
        assert self.cache.keys() == ["1.0.0.3", "1.0.0.1", "1.0.0.4"]
        assert self.cache.get_from_memory("1.0.0.1").risk_score == 40
    
    def test_clear(self):
        self.cache.save_to_memory(make_record("1.0.0.1", self.clock()))
        self.cache.clear()
        
        assert len(self.cache) == 0


class TestStoreTier:
    """Test the durable tier behind the memory tier."""
    
    def setup_method(self):
        """Set up test fixtures."""
        self.clock = MutableClock(datetime(2024, 5, 1, 12, 0, tzinfo=UTC))
        self.store = ClickStore()
    
    def teardown_method(self):
        self.store.close()
    
    def make_cache(self) -> EnrichmentCache:
        return EnrichmentCache(repository=self.store, max_entries=10, clock=self.clock)
    
    def test_write_through_reaches_store(self):
        record = make_record("5.9.1.1", self.clock())
        
        assert asyncio.run(self.make_cache().put(record)) is True
        
        stored = asyncio.run(self.store.get_enrichment("5.9.1.1"))
        assert stored.model_dump(exclude={"source"}) == record.model_dump(exclude={"source"})
    
    def test_store_hit_populates_memory(self):
        record = make_record("5.9.1.1", self.clock())
        asyncio.run(self.make_cache().put(record))
        
        # A new process: empty memory tier, same durable store
        fresh = self.make_cache()
        self.clock.advance(hours=2)
        cached = asyncio.run(fresh.get("5.9.1.1"))
        
        assert cached.source == EnrichmentSource.STORE_CACHE
        assert cached.model_dump(exclude={"source"}) == record.model_dump(exclude={"source"})
        assert "5.9.1.1" in fresh
    
    def test_stale_store_record_is_a_miss(self):
        asyncio.run(self.store.upsert_enrichment(
            make_record("5.9.1.1", self.clock() - timedelta(hours=25))
        ))
        
        assert asyncio.run(self.make_cache().get("5.9.1.1")) is None
    
    def test_store_failure_keeps_memory_copy(self):
        cache = EnrichmentCache(repository=FailingRepository(), clock=self.clock)
        record = make_record("5.9.1.1", self.clock())
        
        assert asyncio.run(cache.put(record)) is False
        assert asyncio.run(cache.get("5.9.1.1")).ip == "5.9.1.1"
