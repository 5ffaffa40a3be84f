"""Optimization Models - Result types of the caching and aggregation layer."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Union
from pydantic import BaseModel, Field

from clickguard.storage.models import ClickEvent


class AggregateMetric(str, Enum):
    """Metrics that can be aggregated over a period."""
    CLICKS = "clicks"
    COST = "cost"
    FRAUD = "fraud"


class AggregatePeriod(str, Enum):
    """Trailing windows for aggregation."""
    HOUR = "hour"     # last 60 minutes
    DAY = "day"       # since 00:00 UTC today
    WEEK = "week"     # last 7 days
    MONTH = "month"   # same day last month


class CacheEntry(BaseModel):
    """A cached value and the monotonic instant it expires at."""
    value: Any = Field(description="Cached value (falsy values are valid)")
    expires_at: float = Field(description="Monotonic expiry instant")


class ClickPage(BaseModel):
    """One page of clicks plus the total matching count."""
    clicks: List[ClickEvent] = Field(default_factory=list)
    count: int = Field(default=0, ge=0, description="Total clicks matching the filter")


class CompactRow(BaseModel):
    """Projection used when a large result set is compressed."""
    id: str
    timestamp: datetime
    key: str = Field(description="IP address for clicks, pattern type for detections")
    value: Union[int, float] = Field(description="Cost micros for clicks, fraud score for detections")


class DashboardData(BaseModel):
    """Headline numbers for an account dashboard."""
    clicks: int = Field(default=0, description="Clicks since 00:00 UTC")
    detections: int = Field(default=0, description="Fraud detections since 00:00 UTC")
    qi: float = Field(default=0.0, description="Latest quiet index")
    alerts: int = Field(default=0, description="Active alerts")
    cost: float = Field(default=0.0, description="Spend since 00:00 UTC in currency units")
    load_time_ms: float = Field(default=0.0, ge=0)


class PerformanceMetrics(BaseModel):
    """Cache effectiveness counters."""
    api_calls: int = Field(default=0, description="Computations run on cache misses")
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = Field(default=0.0, description="Hits as a percentage of lookups")
    avg_response_time_ms: float = Field(default=0.0, description="Mean latency of miss computations")
    cache_size: int = 0


class UsageStat(BaseModel):
    """Request count for one endpoint."""
    endpoint: str
    count: int = 0
    last_seen: Optional[datetime] = None
