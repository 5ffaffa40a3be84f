"""Risk classifiers - decide VPN/proxy/hosting/Tor flags for an IP.

Two variants, chosen once at construction time:
- ProviderBackedClassifier: asks the VPN detection provider
- KeywordHeuristicClassifier: matches ISP/org names against hosting keywords
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import httpx

from clickguard.enrichment.gateway import VPNLookupGateway
from clickguard.enrichment.models import GeoRecord, NetworkFlags


logger = logging.getLogger(__name__)


HOSTING_KEYWORDS = (
    "amazon", "aws", "google cloud", "microsoft azure", "digitalocean",
    "linode", "vultr", "ovh", "hetzner", "hosting", "data center",
    "datacenter", "server", "vps", "cloud", "colocation",
)


class RiskClassifier(ABC):
    """Abstract base class for network-flag classifiers."""
    
    name: str = "abstract"
    
    @abstractmethod
    async def classify(self, ip: str, geo: GeoRecord) -> NetworkFlags:
        """
        Classify an IP.
        
        Args:
            ip: Address being enriched
            geo: Geo/ISP record already fetched for it
            
        Returns:
            NetworkFlags for the address
        """
        pass


class ProviderBackedClassifier(RiskClassifier):
    """Delegates to the VPN detection provider."""
    
    name = "provider"
    
    def __init__(self, gateway: VPNLookupGateway):
        self.gateway = gateway
    
    async def classify(self, ip: str, geo: GeoRecord) -> NetworkFlags:
        return await self.gateway.classify(ip)


class KeywordHeuristicClassifier(RiskClassifier):
    """Flags hosting providers by case-insensitive substring match on ISP and org."""
    
    name = "keyword"
    
    def __init__(self, keywords: Iterable[str] = HOSTING_KEYWORDS):
        self.keywords = tuple(k.lower() for k in keywords)
    
    def is_hosting(self, isp: str, org: str) -> bool:
        text = f"{isp} {org}".lower()
        return any(keyword in text for keyword in self.keywords)
    
    async def classify(self, ip: str, geo: GeoRecord) -> NetworkFlags:
        return NetworkFlags(is_hosting=self.is_hosting(geo.isp, geo.org))


def build_risk_classifier(
    api_key: Optional[str],
    client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
) -> RiskClassifier:
    """Pick the provider-backed classifier when a key is configured, else the keyword heuristic."""
    if api_key:
        logger.info("VPN detection provider configured")
        return ProviderBackedClassifier(
            VPNLookupGateway(api_key=api_key, base_url=base_url, client=client)
        )
    logger.info("No VPN provider key, using hosting keyword heuristic")
    return KeywordHeuristicClassifier()
