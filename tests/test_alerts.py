"""Tests for alert classification, dispatch and webhook delivery."""

import asyncio
import json
from datetime import datetime, UTC

import httpx
import pytest

from clickguard.alerts import (
    AlertDispatcher,
    AlertEvent,
    AlertPattern,
    AlertSeverity,
    WebhookNotifier,
    classify_pattern,
    severity_for,
    sign_payload,
)
from clickguard.enrichment import IPEnrichment
from clickguard.scoring import FeatureVector, FraudPrediction, PredictionSource
from clickguard.storage import ClickEvent, ClickStore


DAYTIME = datetime(2024, 5, 1, 14, 0, tzinfo=UTC)


def make_click(**kwargs) -> ClickEvent:
    values = dict(account_id="acct_1", ip_address="203.0.113.1", timestamp=DAYTIME)
    values.update(kwargs)
    return ClickEvent(**values)


def make_prediction(p: float, source=PredictionSource.MODEL, **features) -> FraudPrediction:
    vector = FeatureVector(hour_of_day=14, day_of_week=3, **features)
    return FraudPrediction(
        is_fraud=p > 0.5,
        fraud_probability=p,
        source=source,
        features=vector,
    )


def make_event(**kwargs) -> AlertEvent:
    values = dict(
        account_id="acct_1",
        ip="203.0.113.1",
        score=0.92,
        pattern=AlertPattern.IP_BURST,
        severity=AlertSeverity.CRITICAL,
        timestamp=DAYTIME,
    )
    values.update(kwargs)
    return AlertEvent(**values)


class RecordingSink:
    def __init__(self):
        self.events = []
    
    async def send(self, event):
        self.events.append(event)


@pytest.mark.parametrize("p,severity", [
    (0.95, AlertSeverity.CRITICAL),
    (0.90, AlertSeverity.CRITICAL),
    (0.80, AlertSeverity.HIGH),
    (0.75, AlertSeverity.HIGH),
    (0.60, AlertSeverity.MEDIUM),
    (0.50, AlertSeverity.MEDIUM),
    (0.49, AlertSeverity.LOW),
])
def test_severity_for(p, severity):
    assert severity_for(p) == severity


class TestClassifyPattern:
    """Test the dominant-signal choice."""
    
    def test_vpn_click(self):
        assert classify_pattern(make_click(is_vpn=True), make_prediction(0.9)) == AlertPattern.NETWORK_ANONYMIZER
    
    def test_tor_from_enrichment(self):
        enrichment = IPEnrichment(ip="203.0.113.1", is_tor=True)
        
        pattern = classify_pattern(make_click(), make_prediction(0.9), enrichment)
        
        assert pattern == AlertPattern.NETWORK_ANONYMIZER
    
    def test_hosting(self):
        assert classify_pattern(make_click(is_hosting=True), make_prediction(0.9)) == AlertPattern.DATA_CENTER
    
    def test_rapid_repeat(self):
        prediction = make_prediction(0.9, time_since_last_click_seconds=12, clicks_from_ip_24h=2)
        
        assert classify_pattern(make_click(), prediction) == AlertPattern.RAPID_REPEAT
    
    def test_ip_burst(self):
        prediction = make_prediction(0.9, time_since_last_click_seconds=600, clicks_from_ip_24h=10)
        
        assert classify_pattern(make_click(), prediction) == AlertPattern.IP_BURST
    
    def test_heuristic_placeholders_are_not_history(self):
        # Heuristic vectors carry time_since_last_click = 0, which is not a real repeat
        prediction = make_prediction(0.9, source=PredictionSource.HEURISTIC)
        
        assert classify_pattern(make_click(), prediction) == AlertPattern.ML_SCORE
    
    def test_off_hours(self):
        night = make_click(timestamp=datetime(2024, 5, 1, 4, 0, tzinfo=UTC))
        prediction = make_prediction(0.9, time_since_last_click_seconds=9999)
        
        assert classify_pattern(night, prediction) == AlertPattern.OFF_HOURS
    
    def test_model_score_only(self):
        prediction = make_prediction(0.9, time_since_last_click_seconds=9999, clicks_from_ip_24h=1)
        
        assert classify_pattern(make_click(), prediction) == AlertPattern.ML_SCORE


class TestWebhookNotifier:
    """Test signed delivery with retries."""
    
    def setup_method(self):
        """Set up test fixtures."""
        self.requests = []
        self.statuses = []
        self.sleeps = []
    
    async def fake_sleep(self, seconds):
        self.sleeps.append(seconds)
    
    def handler(self, request):
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status)
    
    def send(self, event, **kwargs):
        async def run():
            transport = httpx.MockTransport(self.handler)
            async with httpx.AsyncClient(transport=transport) as client:
                notifier = WebhookNotifier(
                    url="http://hooks.test/alerts",
                    client=client,
                    sleep=self.fake_sleep,
                    **kwargs,
                )
                return await notifier.send(event)
        
        return asyncio.run(run())
    
    def test_signed_delivery(self):
        result = self.send(make_event(), secret="s3cret")
        
        assert result.delivered is True
        assert result.attempts == 1
        request = self.requests[0]
        assert request.headers["X-Signature"] == sign_payload("s3cret", request.content)
        assert request.headers["X-Event-Type"] == "alert.triggered"
        
        body = json.loads(request.content)
        assert body["event"] == "alert.triggered"
        assert body["data"]["ip"] == "203.0.113.1"
        assert body["data"]["pattern"] == "IP_BURST"
        assert body["data"]["score"] == 0.92
    
    def test_no_signature_without_secret(self):
        self.send(make_event(), secret=None)
        
        assert "X-Signature" not in self.requests[0].headers
    
    def test_retries_with_exponential_backoff(self):
        self.statuses = [500, 502]
        
        result = self.send(make_event(), base_delay=1.0, max_delay=60.0)
        
        assert result.delivered is True
        assert result.attempts == 3
        assert self.sleeps == [1.0, 2.0]
    
    def test_gives_up_after_max_attempts(self):
        self.statuses = [500] * 10
        
        result = self.send(make_event(), max_attempts=5, base_delay=1.0, max_delay=60.0)
        
        assert result.delivered is False
        assert result.attempts == 5
        assert result.status_code == 500
        assert len(self.requests) == 5
        # No pause after the final attempt
        assert self.sleeps == [1.0, 2.0, 4.0, 8.0]
    
    def test_backoff_is_capped(self):
        notifier = WebhookNotifier(url="http://hooks.test", base_delay=1.0, max_delay=60.0)
        
        assert notifier.backoff_delay(3) == 8.0
        assert notifier.backoff_delay(10) == 60.0
    
    def test_missing_url_is_not_an_error(self):
        notifier = WebhookNotifier(url=None)
        notifier.url = None
        
        result = asyncio.run(notifier.send(make_event()))
        
        assert result.delivered is False
        assert result.attempts == 0


class TestAlertDispatcher:
    """Test threshold evaluation and alert recording."""
    
    def setup_method(self):
        """Set up test fixtures."""
        self.store = ClickStore()
        self.sink = RecordingSink()
        self.dispatcher = AlertDispatcher(self.store, sink=self.sink, default_threshold=0.7)
    
    def teardown_method(self):
        self.store.close()
    
    def evaluate(self, *args):
        async def run():
            event = await self.dispatcher.evaluate(*args)
            await self.dispatcher.drain()
            return event
        
        return asyncio.run(run())
    
    def test_below_threshold(self):
        event = self.evaluate("acct_1", make_click(), make_prediction(0.69))
        
        assert event is None
        assert self.sink.events == []
        assert asyncio.run(self.store.count_active_alerts("acct_1")) == 0
    
    def test_at_threshold_fires(self):
        click = make_click(is_hosting=True)
        
        event = self.evaluate("acct_1", click, make_prediction(0.7))
        
        assert event.pattern == AlertPattern.DATA_CENTER
        assert event.severity == AlertSeverity.MEDIUM
        assert event.click_id == click.click_id
        assert event.timestamp == click.timestamp
        assert self.sink.events == [event]
        assert asyncio.run(self.store.count_active_alerts("acct_1")) == 1
    
    def test_account_threshold_overrides_default(self):
        asyncio.run(self.store.set_alert_threshold("acct_1", 0.95))
        
        assert self.evaluate("acct_1", make_click(), make_prediction(0.9)) is None
        assert self.evaluate("acct_2", make_click(), make_prediction(0.9)) is not None
    
    def test_store_failure_still_notifies(self):
        self.store.close()
        
        event = self.evaluate("acct_1", make_click(), make_prediction(0.99))
        
        assert event.severity == AlertSeverity.CRITICAL
        assert self.sink.events == [event]
        self.store = ClickStore()
    
    def test_failing_sink_does_not_break_evaluate(self):
        class ExplodingSink:
            async def send(self, event):
                raise RuntimeError("sink down")
        
        self.dispatcher.sink = ExplodingSink()
        
        event = self.evaluate("acct_1", make_click(), make_prediction(0.99))
        
        assert event is not None
        assert self.dispatcher.pending_deliveries == 0
        assert asyncio.run(self.store.count_active_alerts("acct_1")) == 1
