"""Optimization module for ClickGuard - caching, aggregation and batching."""

from clickguard.optimization.models import (
    AggregateMetric,
    AggregatePeriod,
    ClickPage,
    CompactRow,
    DashboardData,
    PerformanceMetrics,
    UsageStat,
)
from clickguard.optimization.cache import MISSING, TTLCache
from clickguard.optimization.service import OptimizationService

__all__ = [
    "AggregateMetric",
    "AggregatePeriod",
    "ClickPage",
    "CompactRow",
    "DashboardData",
    "PerformanceMetrics",
    "UsageStat",
    "MISSING",
    "TTLCache",
    "OptimizationService",
]
