"""Tests for the external lookup gateways and the global rate limiter."""

import asyncio

import httpx
import pytest

from clickguard.enrichment import GeoLookupGateway, RateLimiter, VPNLookupGateway
from clickguard.enrichment.gateway import GEO_FIELDS, is_public_ip
from clickguard.enrichment.models import LookupSource


GOOGLE_DNS = {
    "status": "success",
    "country": "United States",
    "countryCode": "US",
    "region": "VA",
    "regionName": "Virginia",
    "city": "Ashburn",
    "zip": "20149",
    "lat": 39.03,
    "lon": -77.5,
    "timezone": "America/New_York",
    "isp": "Google LLC",
    "org": "Google Public DNS",
    "as": "AS15169 Google LLC",
    "asname": "GOOGLE",
}


class FakeTime:
    """Monotonic clock that only moves when something sleeps."""
    
    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps = []
    
    def __call__(self) -> float:
        return self.now
    
    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingLimiter(RateLimiter):
    """Rate limiter that remembers every dispatch time it handed out."""
    
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dispatches = []
    
    async def acquire(self) -> float:
        dispatched = await super().acquire()
        self.dispatches.append(dispatched)
        return dispatched


def make_limiter(fake: FakeTime, interval: float = 1.5) -> RateLimiter:
    return RateLimiter(interval, clock=fake, sleep=fake.sleep)


class TestIsPublicIp:
    """Test the sentinel / non-routable address filter."""
    
    @pytest.mark.parametrize("ip", ["8.8.8.8", "1.1.1.1", "2001:4860:4860::8888"])
    def test_public(self, ip):
        assert is_public_ip(ip) is True
    
    @pytest.mark.parametrize("ip", [
        None, "", "0.0.0.0", "::", "::1", "localhost", "127.0.0.1",
        "10.1.2.3", "192.168.0.10", "172.16.5.4", "169.254.1.1",
        "224.0.0.1", "not-an-ip", "999.1.1.1",
    ])
    def test_not_public(self, ip):
        assert is_public_ip(ip) is False


class TestRateLimiter:
    """Test the global minimum-interval throttle."""
    
    def test_first_acquire_does_not_wait(self):
        fake = FakeTime()
        limiter = make_limiter(fake)
        
        dispatched = asyncio.run(limiter.acquire())
        
        assert dispatched == 100.0
        assert fake.sleeps == []
    
    def test_waits_only_for_the_remaining_interval(self):
        fake = FakeTime()
        limiter = make_limiter(fake)
        
        async def run():
            await limiter.acquire()
            fake.now += 1.0
            return await limiter.acquire()
        
        dispatched = asyncio.run(run())
        
        assert fake.sleeps == [pytest.approx(0.5)]
        assert dispatched == pytest.approx(101.5)
    
    @pytest.mark.parametrize("n", [2, 5, 12])
    def test_concurrent_acquires_are_spaced(self, n):
        fake = FakeTime()
        limiter = make_limiter(fake)
        
        async def run():
            return await asyncio.gather(*(limiter.acquire() for _ in range(n)))
        
        times = sorted(asyncio.run(run()))
        
        assert len(times) == n
        for earlier, later in zip(times, times[1:]):
            assert later - earlier >= 1.5 - 1e-9


class TestGeoLookupGateway:
    """Test the geo-IP provider client."""
    
    def setup_method(self):
        """Set up test fixtures."""
        self.fake = FakeTime()
        self.requests = []
    
    def lookup(self, ip, handler, limiter=None):
        async def run():
            transport = httpx.MockTransport(handler)
            async with httpx.AsyncClient(transport=transport) as client:
                gateway = GeoLookupGateway(
                    limiter=limiter or make_limiter(self.fake),
                    base_url="http://geo.test/json/",
                    client=client,
                )
                return await gateway.lookup(ip)
        
        return asyncio.run(run())
    
    def respond(self, payload, status_code=200):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(status_code, json=payload)
        return handler
    
    def test_success_maps_provider_fields(self):
        result = self.lookup("8.8.8.8", self.respond(GOOGLE_DNS))
        
        assert result.source == LookupSource.PROVIDER
        assert result.is_fallback is False
        assert result.record.country_code == "US"
        assert result.record.region_name == "Virginia"
        assert result.record.isp == "Google LLC"
        assert result.record.asn == "AS15169 Google LLC"
        assert result.record.asname == "GOOGLE"
        
        request = self.requests[0]
        assert request.url.path == "/json/8.8.8.8"
        assert request.url.params["fields"] == GEO_FIELDS
    
    def test_status_fail_is_a_fallback(self):
        result = self.lookup("8.8.8.8", self.respond({"status": "fail", "message": "quota"}))
        
        assert result.is_fallback
        assert result.error == "quota"
        assert result.record.country_code == "XX"
        assert result.record.isp == "Unknown"
    
    def test_http_error_is_a_fallback(self):
        result = self.lookup("8.8.8.8", self.respond({}, status_code=503))
        
        assert result.is_fallback
        assert result.error
    
    def test_timeout_is_a_fallback(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)
        
        result = self.lookup("8.8.8.8", handler)
        
        assert result.is_fallback
        assert "timed out" in result.error
    
    def test_invalid_json_is_a_fallback(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>")
        
        result = self.lookup("8.8.8.8", handler)
        
        assert result.is_fallback
    
    @pytest.mark.parametrize("body", [
        ["not", "an", "object"],
        {"status": "success", "countryCode": "US", "lat": "north"},
    ])
    def test_malformed_body_is_a_fallback(self, body):
        result = self.lookup("8.8.8.8", lambda request: httpx.Response(200, json=body))
        
        assert result.is_fallback
        assert result.error
    
    def test_private_address_never_dispatches(self):
        limiter = make_limiter(self.fake)
        result = self.lookup("192.168.1.1", self.respond(GOOGLE_DNS), limiter=limiter)
        
        assert result.is_fallback
        assert self.requests == []
        assert limiter.last_dispatch is None
    
    def test_concurrent_lookups_respect_minimum_interval(self):
        limiter = RecordingLimiter(1.5, clock=self.fake, sleep=self.fake.sleep)
        
        def handler(request):
            self.requests.append(request)
            return httpx.Response(200, json=GOOGLE_DNS)
        
        async def run():
            transport = httpx.MockTransport(handler)
            async with httpx.AsyncClient(transport=transport) as client:
                gateway = GeoLookupGateway(
                    limiter=limiter,
                    base_url="http://geo.test/json",
                    client=client,
                )
                ips = [f"8.8.4.{i}" for i in range(1, 9)]
                return await asyncio.gather(*(gateway.lookup(ip) for ip in ips))
        
        results = asyncio.run(run())
        
        assert all(r.source == LookupSource.PROVIDER for r in results)
        assert len(self.requests) == 8
        ordered = sorted(limiter.dispatches)
        assert len(ordered) == 8
        for earlier, later in zip(ordered, ordered[1:]):
            assert later - earlier >= 1.5 - 1e-9


class TestVPNLookupGateway:
    """Test the VPN/Tor classification client."""
    
    def classify(self, handler):
        async def run():
            transport = httpx.MockTransport(handler)
            async with httpx.AsyncClient(transport=transport) as client:
                gateway = VPNLookupGateway(api_key="k-123", base_url="http://vpn.test/ip", client=client)
                return await gateway.classify("8.8.8.8")
        
        return asyncio.run(run())
    
    def test_sends_api_key(self):
        seen = []
        
        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"block": 0})
        
        flags = self.classify(handler)
        
        assert seen[0].headers["X-Key"] == "k-123"
        assert seen[0].url.path == "/ip/8.8.8.8"
        assert flags.is_vpn is False
        assert flags.block_type == 0
    
    def test_block_one_is_vpn_and_hosting(self):
        flags = self.classify(lambda request: httpx.Response(200, json={"block": 1}))
        
        assert flags.is_vpn and flags.is_proxy and flags.is_hosting
        assert flags.is_tor is False
    
    def test_block_two_is_tor(self):
        flags = self.classify(lambda request: httpx.Response(200, json={"block": 2}))
        
        assert flags.is_tor is True
        assert flags.is_vpn is False
    
    def test_provider_error_yields_clean_flags(self):
        flags = self.classify(lambda request: httpx.Response(429, json={}))
        
        assert flags.is_vpn is False
        assert flags.is_tor is False
        assert flags.block_type is None
    
    @pytest.mark.parametrize("body", [
        {"block": "unknown"},
        {"block": 7},
        {"block": [1]},
        [{"block": 1}],
    ])
    def test_malformed_body_yields_clean_flags(self, body):
        flags = self.classify(lambda request: httpx.Response(200, json=body))
        
        assert flags.is_vpn is False
        assert flags.is_tor is False
        assert flags.block_type is None
