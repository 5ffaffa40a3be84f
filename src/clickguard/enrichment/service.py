"""IP Enrichment Engine - geo, network and risk metadata for click IPs."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from clickguard.config import config
from clickguard.enrichment.cache import EnrichmentCache, utc_now
from clickguard.enrichment.classifiers import RiskClassifier, build_risk_classifier
from clickguard.enrichment.gateway import GeoLookupGateway, is_public_ip
from clickguard.enrichment.models import (
    EnrichmentSource,
    GeoRecord,
    IPEnrichment,
    NetworkFlags,
    RiskLevel,
)
from clickguard.enrichment.risk import calculate_risk_score, get_risk_level


logger = logging.getLogger(__name__)


class IPEnrichmentService:
    """
    Enriches IP addresses with geo, ISP, anonymizer flags and a risk score.
    
    Flow per IP:
    1. Sentinel / non-public address -> default record (risk 0)
    2. Enrichment cache (memory, then durable store)
    3. Geo lookup through the throttled gateway
    4. Network flags from the configured RiskClassifier
    5. Additive risk score and level
    6. Write-through to the cache
    
    enrich() never raises; any internal failure yields the default record.
    """
    
    def __init__(
        self,
        gateway: Optional[GeoLookupGateway] = None,
        classifier: Optional[RiskClassifier] = None,
        cache: Optional[EnrichmentCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the enrichment service.
        
        Args:
            gateway: Geo lookup gateway (owns the global rate limiter)
            classifier: Network-flag classifier (default: chosen from config)
            cache: Enrichment cache (default: memory-only)
            clock: Returns the current UTC time
        """
        self.gateway = gateway or GeoLookupGateway()
        self.classifier = classifier or build_risk_classifier(config.vpn_api_key)
        self.cache = cache if cache is not None else EnrichmentCache(clock=clock)
        self._clock = clock
        
        logger.info(f"IP Enrichment Service initialized (classifier: {self.classifier.name})")
    
    async def enrich(self, ip: str) -> IPEnrichment:
        """
        Enrich a single IP address.
        
        Args:
            ip: Address to enrich
            
        Returns:
            IPEnrichment; its `source` tells how it was produced
        """
        if not is_public_ip(ip):
            return self.default_enrichment(ip)
        
        try:
            cached = await self.cache.get(ip)
            if cached is not None:
                return cached
            
            lookup = await self.gateway.lookup(ip)
            flags = await self.classifier.classify(ip, lookup.record)
            
            source = EnrichmentSource.DEGRADED if lookup.is_fallback else EnrichmentSource.LIVE
            enrichment = self.build_enrichment(ip, lookup.record, flags, source)
            
            if lookup.is_fallback:
                logger.warning(f"Enrichment for {ip} degraded: {lookup.error}")
                return enrichment
            
            await self.cache.put(enrichment)
            
            logger.info(
                f"Enriched {ip}: {enrichment.country_code} / {enrichment.isp} "
                f"risk={enrichment.risk_score} ({enrichment.risk_level.value})"
            )
            return enrichment
            
        except Exception:
            logger.exception(f"Error enriching IP {ip}")
            return self.default_enrichment(ip)
    
    async def enrich_batch(self, ips: List[str]) -> List[IPEnrichment]:
        """Enrich several IPs one after another; the gateway throttle is shared."""
        results = []
        for ip in ips:
            results.append(await self.enrich(ip))
        return results
    
    def build_enrichment(
        self,
        ip: str,
        geo: GeoRecord,
        flags: NetworkFlags,
        source: EnrichmentSource = EnrichmentSource.LIVE,
    ) -> IPEnrichment:
        """Combine geo data and flags into a scored record."""
        risk_score = calculate_risk_score(flags, geo.country_code, geo.isp)
        
        return IPEnrichment(
            ip=ip,
            country=geo.country,
            country_code=geo.country_code,
            region=geo.region,
            region_name=geo.region_name,
            city=geo.city,
            zip=geo.zip,
            lat=geo.lat,
            lon=geo.lon,
            timezone=geo.timezone,
            isp=geo.isp,
            org=geo.org,
            asn=geo.asn,
            asname=geo.asname,
            is_vpn=flags.is_vpn,
            is_proxy=flags.is_proxy,
            is_hosting=flags.is_hosting,
            is_tor=flags.is_tor,
            risk_score=risk_score,
            risk_level=get_risk_level(risk_score),
            enriched_at=self._clock(),
            source=source,
        )
    
    def default_enrichment(self, ip: str) -> IPEnrichment:
        """Safe record for sentinel addresses and internal failures."""
        return IPEnrichment(
            ip=ip or "",
            risk_score=0,
            risk_level=RiskLevel.SAFE,
            enriched_at=self._clock(),
            source=EnrichmentSource.DEFAULT,
        )
