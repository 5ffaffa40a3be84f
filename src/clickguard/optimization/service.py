"""Optimization Service - cache-aside reads, parallel aggregation and paced batches."""

import asyncio
import calendar
import logging
import time
from datetime import datetime, timedelta, UTC
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
    TypeVar,
    Union,
)

from clickguard.config import config
from clickguard.optimization.cache import MISSING, TTLCache
from clickguard.optimization.models import (
    AggregateMetric,
    AggregatePeriod,
    ClickPage,
    CompactRow,
    DashboardData,
    PerformanceMetrics,
    UsageStat,
)
from clickguard.storage.models import ClickEvent, FraudDetection


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

CLICKS_TTL_SECONDS = 60
DETECTIONS_TTL_SECONDS = 120
AGGREGATE_TTL_SECONDS = 300
QUIET_INDEX_TTL_SECONDS = 60
ALERTS_TTL_SECONDS = 60
DASHBOARD_TTL_SECONDS = 30
COMPRESS_THRESHOLD = 100
MICROS_PER_UNIT = 1_000_000


class OptimizationStore(Protocol):
    """Durable-store reads served through the cache."""
    
    async def list_clicks(
        self,
        account_id: str,
        limit: int,
        offset: int,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> tuple:
        ...
    
    async def list_detections(
        self, account_id: str, limit: int, severity: Optional[str]
    ) -> List[FraudDetection]:
        ...
    
    async def count_clicks(self, account_id: str, since: datetime) -> int:
        ...
    
    async def count_detections(self, account_id: str, since: datetime) -> int:
        ...
    
    async def sum_cost_micros(self, account_id: str, since: datetime) -> int:
        ...
    
    async def get_latest_quiet_index(self, account_id: str) -> Optional[float]:
        ...
    
    async def count_active_alerts(self, account_id: str) -> int:
        ...


def period_start(period: AggregatePeriod, now: datetime) -> datetime:
    """Start of the trailing window for an aggregation period."""
    if period == AggregatePeriod.HOUR:
        return now - timedelta(hours=1)
    if period == AggregatePeriod.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == AggregatePeriod.WEEK:
        return now - timedelta(days=7)
    
    # Month: same day last month, clamped to that month's length
    year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


class OptimizationService:
    """
    Caching and aggregation layer in front of the durable store.
    
    Two TTL caches are kept: the general one for query results and
    dashboards, and a longer-lived one for ML predictions. Only the general
    cache feeds the hit/miss metrics.
    """
    
    def __init__(
        self,
        store: OptimizationStore,
        cache: Optional[TTLCache] = None,
        ml_cache: Optional[TTLCache] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        timer: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the service.
        
        Args:
            store: Durable store queried on misses
            cache: General cache (default TTL from config)
            ml_cache: Prediction cache (default TTL from config)
            batch_size: Items processed concurrently per chunk
            batch_delay: Pause in seconds between chunks
            clock: Returns the current UTC time (aggregation windows)
            timer: Monotonic seconds used for latency measurement
            sleep: Awaitable sleep used between batch chunks
        """
        self.store = store
        self.cache = cache if cache is not None else TTLCache(default_ttl=config.default_cache_ttl_seconds)
        self.ml_cache = ml_cache if ml_cache is not None else TTLCache(default_ttl=config.ml_cache_ttl_seconds)
        self.batch_size = batch_size or config.batch_size
        self.batch_delay = batch_delay if batch_delay is not None else config.batch_delay_seconds
        self._clock = clock
        self._timer = timer
        self._sleep = sleep
        
        self._hits = 0
        self._misses = 0
        self._api_calls = 0
        self._avg_response_ms = 0.0
        self._usage: Dict[str, UsageStat] = {}
        # Keys cached on behalf of each account, for exact per-account clears
        self._account_keys: Dict[str, Set[str]] = {}
        
        logger.info("Optimization Service initialized")
    
    # ------------------------------------------------------------------
    # Cache-aside
    # ------------------------------------------------------------------
    
    async def get_cached(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
        account_id: Optional[str] = None,
    ) -> T:
        """
        Return the cached value for key, computing and caching it on a miss.
        
        Args:
            key: Cache key
            compute: Coroutine function producing the value; called at most once
            ttl: Seconds to keep a computed value (default: cache default)
            account_id: Account the value belongs to; clear_cache_for_account drops it
            
        Returns:
            Cached or freshly computed value
        """
        cached = self.cache.get(key)
        if cached is not MISSING:
            self._hits += 1
            logger.debug(f"Cache HIT: {key}")
            return cached
        
        self._misses += 1
        logger.debug(f"Cache MISS: {key}")
        
        started = self._timer()
        value = await compute()
        self.cache.set(key, value, ttl)
        if account_id is not None:
            self._account_keys.setdefault(account_id, set()).add(key)
        self._record_latency((self._timer() - started) * 1000)
        
        return value
    
    async def get_ml_prediction_cached(
        self,
        account_id: str,
        click_id: str,
        predict: Callable[[], Awaitable[T]],
    ) -> T:
        """Prediction for a click, reused for the ML cache TTL."""
        key = f"ml_{account_id}_{click_id}"
        
        cached = self.ml_cache.get(key)
        if cached is not MISSING:
            return cached
        
        prediction = await predict()
        self.ml_cache.set(key, prediction)
        self._account_keys.setdefault(account_id, set()).add(key)
        return prediction
    
    def _record_latency(self, duration_ms: float) -> None:
        count = self._api_calls
        self._api_calls += 1
        self._avg_response_ms = (self._avg_response_ms * count + duration_ms) / (count + 1)
    
    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    
    async def get_clicks_optimized(
        self,
        account_id: str,
        limit: int = 100,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ClickPage:
        key = f"clicks_{account_id}_{limit}_{offset}_{start}_{end}"
        
        async def fetch() -> ClickPage:
            clicks, count = await self.store.list_clicks(account_id, limit, offset, start, end)
            return ClickPage(clicks=clicks, count=count)
        
        return await self.get_cached(key, fetch, CLICKS_TTL_SECONDS, account_id)
    
    async def get_detections_optimized(
        self,
        account_id: str,
        limit: int = 100,
        severity: Optional[str] = None,
    ) -> List[FraudDetection]:
        key = f"detections_{account_id}_{limit}_{severity}"
        return await self.get_cached(
            key,
            lambda: self.store.list_detections(account_id, limit, severity),
            DETECTIONS_TTL_SECONDS,
            account_id,
        )
    
    async def aggregate(
        self,
        account_id: str,
        metric: Union[AggregateMetric, str],
        period: Union[AggregatePeriod, str] = AggregatePeriod.DAY,
    ) -> Union[int, float]:
        """
        Aggregate a metric over a trailing period.
        
        Args:
            account_id: Account to aggregate
            metric: clicks (count), fraud (detection count) or cost (currency units)
            period: hour, day, week or month
            
        Returns:
            Count for clicks and fraud, cost rounded to 2 decimals
            
        Raises:
            ValueError: Unknown metric or period
        """
        metric = AggregateMetric(metric)
        period = AggregatePeriod(period)
        key = f"agg_{account_id}_{metric.value}_{period.value}"
        
        async def compute() -> Union[int, float]:
            since = period_start(period, self._clock())
            if metric == AggregateMetric.CLICKS:
                return await self.store.count_clicks(account_id, since)
            if metric == AggregateMetric.FRAUD:
                return await self.store.count_detections(account_id, since)
            micros = await self.store.sum_cost_micros(account_id, since)
            return round(micros / MICROS_PER_UNIT, 2)
        
        return await self.get_cached(key, compute, AGGREGATE_TTL_SECONDS, account_id)
    
    async def get_current_qi(self, account_id: str) -> float:
        """Latest quiet index of the account, 0.0 if none was recorded."""
        async def fetch() -> float:
            qi = await self.store.get_latest_quiet_index(account_id)
            return qi or 0.0
        
        return await self.get_cached(f"qi_{account_id}", fetch, QUIET_INDEX_TTL_SECONDS, account_id)
    
    async def get_active_alerts_count(self, account_id: str) -> int:
        return await self.get_cached(
            f"alerts_{account_id}",
            lambda: self.store.count_active_alerts(account_id),
            ALERTS_TTL_SECONDS,
            account_id,
        )
    
    async def load_dashboard_data(self, account_id: str) -> DashboardData:
        """Dashboard headline numbers, fetched concurrently and cached as one value."""
        async def compute() -> DashboardData:
            started = self._timer()
            clicks, detections, qi, alerts, cost = await asyncio.gather(
                self.aggregate(account_id, AggregateMetric.CLICKS, AggregatePeriod.DAY),
                self.aggregate(account_id, AggregateMetric.FRAUD, AggregatePeriod.DAY),
                self.get_current_qi(account_id),
                self.get_active_alerts_count(account_id),
                self.aggregate(account_id, AggregateMetric.COST, AggregatePeriod.DAY),
            )
            load_time_ms = (self._timer() - started) * 1000
            logger.info(f"Dashboard for {account_id} loaded in {load_time_ms:.0f}ms")
            
            return DashboardData(
                clicks=clicks,
                detections=detections,
                qi=qi,
                alerts=alerts,
                cost=cost,
                load_time_ms=load_time_ms,
            )
        
        return await self.get_cached(f"dashboard_{account_id}", compute, DASHBOARD_TTL_SECONDS, account_id)
    
    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    
    async def process_batch(
        self,
        items: Sequence[T],
        processor: Callable[[T], Awaitable[R]],
        batch_size: Optional[int] = None,
    ) -> List[R]:
        """
        Run processor over items in fixed-size concurrent chunks.
        
        Chunks run one after another with batch_delay between them. Results
        come back in input order.
        """
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")
        
        results: List[R] = []
        for i in range(0, len(items), size):
            chunk = items[i:i + size]
            results.extend(await asyncio.gather(*(processor(item) for item in chunk)))
            
            if i + size < len(items):
                await self._sleep(self.batch_delay)
        
        return results
    
    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------
    
    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """
        Drop cached entries.
        
        Args:
            pattern: Drop only keys containing this substring (None = everything)
            
        Returns:
            Number of entries dropped
        """
        if pattern is None:
            dropped = len(self.cache) + len(self.ml_cache)
            self.cache.clear()
            self.ml_cache.clear()
            self._account_keys.clear()
            logger.info("Cache cleared")
            return dropped
        
        dropped = 0
        for cache in (self.cache, self.ml_cache):
            for key in cache.keys():
                if pattern in key and cache.delete(key):
                    dropped += 1
        
        logger.info(f"Cleared {dropped} cache entries for pattern: {pattern}")
        return dropped
    
    def clear_cache_for_account(self, account_id: str) -> int:
        """Drop every entry cached for exactly this account (acct_1 leaves acct_10 alone)."""
        dropped = 0
        for key in self._account_keys.pop(account_id, set()):
            for cache in (self.cache, self.ml_cache):
                if cache.delete(key):
                    dropped += 1
        
        logger.info(f"Cleared {dropped} cache entries for account {account_id}")
        return dropped
    
    def purge_expired(self) -> int:
        """Periodic cleanup: drop expired entries from both caches."""
        purged = self.cache.purge_expired() + self.ml_cache.purge_expired()
        
        for account_id, keys in list(self._account_keys.items()):
            keys.intersection_update([k for k in keys if k in self.cache or k in self.ml_cache])
            if not keys:
                del self._account_keys[account_id]
        
        return purged
    
    def get_performance_metrics(self) -> PerformanceMetrics:
        lookups = self._hits + self._misses
        hit_rate = round(self._hits / lookups * 100, 1) if lookups else 0.0
        
        return PerformanceMetrics(
            api_calls=self._api_calls,
            cache_hits=self._hits,
            cache_misses=self._misses,
            cache_hit_rate=hit_rate,
            avg_response_time_ms=round(self._avg_response_ms, 1),
            cache_size=len(self.cache),
        )
    
    def track_usage(self, endpoint: str) -> None:
        stat = self._usage.setdefault(endpoint, UsageStat(endpoint=endpoint))
        stat.count += 1
        stat.last_seen = self._clock()
    
    def get_usage_stats(self) -> List[UsageStat]:
        """Endpoints by request count, busiest first."""
        return sorted(self._usage.values(), key=lambda s: s.count, reverse=True)
    
    def compress_large_results(
        self,
        rows: Sequence[Union[ClickEvent, FraudDetection]],
    ) -> Sequence[Any]:
        """Project large result sets down to {id, timestamp, key, value}; small ones pass through."""
        if len(rows) < COMPRESS_THRESHOLD:
            return rows
        
        compact: List[CompactRow] = []
        for row in rows:
            if isinstance(row, ClickEvent):
                compact.append(CompactRow(
                    id=row.click_id,
                    timestamp=row.timestamp,
                    key=row.ip_address,
                    value=row.cost_micros,
                ))
            else:
                compact.append(CompactRow(
                    id=row.detection_id,
                    timestamp=row.detected_at,
                    key=row.pattern_type,
                    value=row.fraud_score,
                ))
        return compact
