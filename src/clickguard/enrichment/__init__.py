"""Enrichment module for ClickGuard - IP geo, network and risk metadata."""

from clickguard.enrichment.models import (
    EnrichmentSource,
    GeoLookup,
    GeoRecord,
    IPEnrichment,
    LookupSource,
    NetworkFlags,
    RiskLevel,
)
from clickguard.enrichment.gateway import GeoLookupGateway, RateLimiter, VPNLookupGateway
from clickguard.enrichment.classifiers import (
    KeywordHeuristicClassifier,
    ProviderBackedClassifier,
    RiskClassifier,
    build_risk_classifier,
)
from clickguard.enrichment.cache import EnrichmentCache
from clickguard.enrichment.service import IPEnrichmentService

__all__ = [
    "EnrichmentSource",
    "GeoLookup",
    "GeoRecord",
    "IPEnrichment",
    "LookupSource",
    "NetworkFlags",
    "RiskLevel",
    "GeoLookupGateway",
    "RateLimiter",
    "VPNLookupGateway",
    "KeywordHeuristicClassifier",
    "ProviderBackedClassifier",
    "RiskClassifier",
    "build_risk_classifier",
    "EnrichmentCache",
    "IPEnrichmentService",
]
