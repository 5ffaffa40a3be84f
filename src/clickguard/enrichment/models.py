"""Models for IP enrichment."""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    """Discretised bucket of an IP risk score."""
    
    SAFE = "safe"            # < 10
    LOW = "low"              # 10-29
    MEDIUM = "medium"        # 30-49
    HIGH = "high"            # 50-69
    CRITICAL = "critical"    # >= 70


class LookupSource(str, Enum):
    """Where a geo record came from."""
    
    PROVIDER = "PROVIDER"    # Live answer from the geo-IP provider
    FALLBACK = "FALLBACK"    # Default record (invalid input or provider failure)


class EnrichmentSource(str, Enum):
    """How an enrichment record was produced."""
    
    LIVE = "LIVE"                    # Freshly computed from external lookups
    MEMORY_CACHE = "MEMORY_CACHE"    # In-process cache hit
    STORE_CACHE = "STORE_CACHE"      # Durable store hit
    DEGRADED = "DEGRADED"            # Geo provider failed, scored from defaults, not cached
    DEFAULT = "DEFAULT"              # Sentinel address or internal failure


class GeoRecord(BaseModel):
    """Geo/ISP data as returned by the geo-IP provider."""
    
    country: str = Field(default="Unknown")
    country_code: str = Field(default="XX")
    region: str = Field(default="")
    region_name: str = Field(default="")
    city: str = Field(default="Unknown")
    zip: str = Field(default="")
    lat: float = Field(default=0.0)
    lon: float = Field(default=0.0)
    timezone: str = Field(default="")
    isp: str = Field(default="Unknown")
    org: str = Field(default="")
    asn: str = Field(default="", description="Provider 'as' field, e.g. 'AS15169 Google LLC'")
    asname: str = Field(default="")
    
    @classmethod
    def from_provider(cls, data: dict) -> "GeoRecord":
        """Build a record from an ip-api.com JSON body, defaulting empty fields."""
        return cls(
            country=data.get("country") or "Unknown",
            country_code=data.get("countryCode") or "XX",
            region=data.get("region") or "",
            region_name=data.get("regionName") or "",
            city=data.get("city") or "Unknown",
            zip=data.get("zip") or "",
            lat=data.get("lat") or 0.0,
            lon=data.get("lon") or 0.0,
            timezone=data.get("timezone") or "",
            isp=data.get("isp") or "Unknown",
            org=data.get("org") or "",
            asn=data.get("as") or "",
            asname=data.get("asname") or "",
        )


class GeoLookup(BaseModel):
    """Result of a gateway lookup. Failures are carried, never raised."""
    
    ip: str
    record: GeoRecord = Field(default_factory=GeoRecord)
    source: LookupSource = Field(default=LookupSource.FALLBACK)
    error: Optional[str] = Field(default=None)
    
    @property
    def is_fallback(self) -> bool:
        return self.source == LookupSource.FALLBACK


class NetworkFlags(BaseModel):
    """Anonymizer / data-center classification of an IP."""
    
    is_vpn: bool = False
    is_proxy: bool = False
    is_hosting: bool = False
    is_tor: bool = False
    block_type: Optional[int] = Field(default=None, description="Provider block code (0, 1, 2)")


class IPEnrichment(BaseModel):
    """
    Enrichment record for a single IP address.
    
    risk_score and risk_level are derived from the flags, country code
    and ISP; they are never set independently of those inputs.
    """
    
    ip: str = Field(description="IP address or sentinel value")
    
    # Geographic
    country: str = Field(default="Unknown")
    country_code: str = Field(default="XX")
    region: str = Field(default="")
    region_name: str = Field(default="")
    city: str = Field(default="Unknown")
    zip: str = Field(default="")
    lat: float = Field(default=0.0)
    lon: float = Field(default=0.0)
    timezone: str = Field(default="")
    
    # Network
    isp: str = Field(default="Unknown")
    org: str = Field(default="")
    asn: str = Field(default="")
    asname: str = Field(default="")
    
    # Security
    is_vpn: bool = Field(default=False)
    is_proxy: bool = Field(default=False)
    is_hosting: bool = Field(default=False)
    is_tor: bool = Field(default=False)
    
    # Risk
    risk_score: int = Field(default=0, ge=0, le=100)
    risk_level: RiskLevel = Field(default=RiskLevel.SAFE)
    
    # Meta
    enriched_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: EnrichmentSource = Field(default=EnrichmentSource.LIVE)
    
    @property
    def flags(self) -> NetworkFlags:
        return NetworkFlags(
            is_vpn=self.is_vpn,
            is_proxy=self.is_proxy,
            is_hosting=self.is_hosting,
            is_tor=self.is_tor,
        )
