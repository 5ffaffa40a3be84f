"""External Lookup Gateway - throttled geo-IP and VPN lookups.

All geo lookups in the process go through one RateLimiter, which owns the
"last dispatch" marker. Callers queue on its lock, so a caller's wait is
always measured from the real last dispatch, never from when it started
waiting.
"""

import asyncio
import ipaddress
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from clickguard.config import config
from clickguard.enrichment.models import GeoLookup, GeoRecord, LookupSource, NetworkFlags


logger = logging.getLogger(__name__)


GEO_FIELDS = (
    "status,message,country,countryCode,region,regionName,city,zip,"
    "lat,lon,timezone,isp,org,as,asname"
)

SENTINEL_ADDRESSES = frozenset({"", "0.0.0.0", "::", "::1", "localhost"})

# IPHub block codes
BLOCK_CLEAN = 0
BLOCK_VPN_OR_HOSTING = 1
BLOCK_TOR = 2


def is_public_ip(ip: Optional[str]) -> bool:
    """True for syntactically valid, globally routable addresses."""
    if not ip or ip in SENTINEL_ADDRESSES:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        address.is_loopback
        or address.is_private
        or address.is_unspecified
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
    )


class RateLimiter:
    """
    Global minimum-interval throttle.
    
    Not a token bucket: every dispatch is at least `min_interval` seconds
    after the previous one. The lock is held while waiting, so concurrent
    callers are released one at a time.
    """
    
    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_dispatch: Optional[float] = None
    
    @property
    def last_dispatch(self) -> Optional[float]:
        return self._last_dispatch
    
    async def acquire(self) -> float:
        """Wait for the next dispatch slot and claim it. Returns the dispatch time."""
        async with self._lock:
            now = self._clock()
            if self._last_dispatch is not None:
                wait = self.min_interval - (now - self._last_dispatch)
                if wait > 0:
                    logger.debug(f"Rate limit: waiting {wait:.3f}s before lookup")
                    await self._sleep(wait)
                    now = self._clock()
            self._last_dispatch = now
            return now


class _HttpGateway:
    """Shared httpx plumbing. Uses an injected client or a short-lived one per call."""
    
    def __init__(self, client: Optional[httpx.AsyncClient], timeout: float):
        self._client = client
        self.timeout = timeout
    
    async def _get(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.get(url, timeout=self.timeout, **kwargs)


class GeoLookupGateway(_HttpGateway):
    """
    Client for the ip-api.com geo/ISP lookup.
    
    Never raises for transport or provider errors: the result carries a
    default record and the error text instead.
    """
    
    def __init__(
        self,
        limiter: Optional[RateLimiter] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client, timeout or config.lookup_timeout_seconds)
        self.limiter = limiter or RateLimiter(config.min_lookup_interval_seconds)
        self.base_url = (base_url or config.geo_api_url).rstrip("/")
    
    async def lookup(self, ip: str) -> GeoLookup:
        """
        Look up geo and ISP data for an IP.
        
        Args:
            ip: Address to look up
            
        Returns:
            GeoLookup with source PROVIDER on success, FALLBACK otherwise
        """
        if not is_public_ip(ip):
            return GeoLookup(ip=ip, error="invalid or non-public address")
        
        await self.limiter.acquire()
        
        try:
            response = await self._get(f"{self.base_url}/{ip}", params={"fields": GEO_FIELDS})
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"unexpected response body: {type(data).__name__}")
            
            if data.get("status") == "fail":
                message = data.get("message") or "GeoIP lookup failed"
                logger.warning(f"GeoIP provider rejected {ip}: {message}")
                return GeoLookup(ip=ip, error=message)
            
            # pydantic's ValidationError is a ValueError
            record = GeoRecord.from_provider(data)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"GeoIP lookup failed for {ip}: {e}")
            return GeoLookup(ip=ip, error=str(e) or type(e).__name__)
        
        return GeoLookup(
            ip=ip,
            record=record,
            source=LookupSource.PROVIDER,
        )


class VPNLookupGateway(_HttpGateway):
    """Client for the IPHub VPN/Tor classification API."""
    
    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(client, timeout or config.lookup_timeout_seconds)
        self.api_key = api_key
        self.base_url = (base_url or config.vpn_api_url).rstrip("/")
    
    async def classify(self, ip: str) -> NetworkFlags:
        """Classify an IP; returns clean flags if the provider is unavailable or answers garbage."""
        try:
            response = await self._get(
                f"{self.base_url}/{ip}",
                headers={"X-Key": self.api_key},
            )
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"unexpected response body: {type(data).__name__}")
            
            block = int(data.get("block") or BLOCK_CLEAN)
            if block not in (BLOCK_CLEAN, BLOCK_VPN_OR_HOSTING, BLOCK_TOR):
                raise ValueError(f"unknown block code {block}")
        except (httpx.HTTPError, ValueError, TypeError) as e:
            logger.warning(f"VPN lookup failed for {ip}: {e}")
            return NetworkFlags()
        
        flagged = block == BLOCK_VPN_OR_HOSTING
        
        return NetworkFlags(
            is_vpn=flagged,
            is_proxy=flagged,
            is_hosting=flagged,
            is_tor=block == BLOCK_TOR,
            block_type=block,
        )
