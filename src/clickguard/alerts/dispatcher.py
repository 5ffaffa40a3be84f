"""Alert Dispatcher - fires alerts when a click's fraud probability crosses the account threshold."""

import asyncio
import logging
from typing import Optional, Protocol, Set

from clickguard.alerts.models import AlertEvent, AlertPattern, AlertSeverity, DeliveryResult
from clickguard.alerts.notifier import AlertSink
from clickguard.config import config
from clickguard.enrichment.models import IPEnrichment
from clickguard.scoring.models import FraudPrediction, PredictionSource
from clickguard.storage.models import ClickEvent


logger = logging.getLogger(__name__)


RAPID_REPEAT_SECONDS = 60
IP_BURST_CLICKS = 10
OFF_HOURS = range(0, 6)

# (minimum probability, severity), checked top-down
SEVERITY_THRESHOLDS = [
    (0.90, AlertSeverity.CRITICAL),
    (0.75, AlertSeverity.HIGH),
    (0.50, AlertSeverity.MEDIUM),
]


class AlertStore(Protocol):
    """Durable-store operations used by the dispatcher."""
    
    async def get_alert_threshold(self, account_id: str) -> Optional[float]:
        ...
    
    async def insert_alert(self, event: AlertEvent) -> None:
        ...


def severity_for(probability: float) -> AlertSeverity:
    for minimum, severity in SEVERITY_THRESHOLDS:
        if probability >= minimum:
            return severity
    return AlertSeverity.LOW


def classify_pattern(
    click: ClickEvent,
    prediction: FraudPrediction,
    enrichment: Optional[IPEnrichment] = None,
) -> AlertPattern:
    """Pick the dominant signal behind a suspicious click."""
    anonymized = click.is_vpn or (
        enrichment is not None
        and (enrichment.is_vpn or enrichment.is_proxy or enrichment.is_tor)
    )
    if anonymized:
        return AlertPattern.NETWORK_ANONYMIZER
    
    if click.is_hosting or (enrichment is not None and enrichment.is_hosting):
        return AlertPattern.DATA_CENTER
    
    # History features are only real on model predictions
    features = prediction.features
    if features is not None and prediction.source == PredictionSource.MODEL:
        if features.time_since_last_click_seconds < RAPID_REPEAT_SECONDS:
            return AlertPattern.RAPID_REPEAT
        if features.clicks_from_ip_24h >= IP_BURST_CLICKS:
            return AlertPattern.IP_BURST
    
    if click.timestamp.hour in OFF_HOURS:
        return AlertPattern.OFF_HOURS
    
    return AlertPattern.ML_SCORE


class AlertDispatcher:
    """
    Turns predictions into alerts.
    
    An alert is recorded (as an active alert row) and handed to the sink
    when the fraud probability is at or above the account's threshold.
    Sink delivery runs as a background task so a slow or retrying webhook
    never holds up scoring; `drain()` waits for deliveries still in flight.
    """
    
    def __init__(
        self,
        store: AlertStore,
        sink: Optional[AlertSink] = None,
        default_threshold: Optional[float] = None,
    ):
        self.store = store
        self.sink = sink
        self.default_threshold = (
            config.default_alert_threshold if default_threshold is None else default_threshold
        )
        self._deliveries: Set[asyncio.Task] = set()
    
    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)
    
    async def threshold_for(self, account_id: str) -> float:
        try:
            threshold = await self.store.get_alert_threshold(account_id)
        except Exception as e:
            logger.warning(f"Could not read alert threshold for {account_id}: {e}")
            threshold = None
        return self.default_threshold if threshold is None else threshold
    
    async def evaluate(
        self,
        account_id: str,
        click: ClickEvent,
        prediction: FraudPrediction,
        enrichment: Optional[IPEnrichment] = None,
    ) -> Optional[AlertEvent]:
        """
        Fire an alert for a scored click if it crosses the threshold.
        
        Returns:
            The AlertEvent that was fired, or None
        """
        threshold = await self.threshold_for(account_id)
        if prediction.fraud_probability < threshold:
            return None
        
        event = AlertEvent(
            account_id=account_id,
            click_id=click.click_id,
            ip=click.ip_address,
            score=prediction.fraud_probability,
            pattern=classify_pattern(click, prediction, enrichment),
            severity=severity_for(prediction.fraud_probability),
            timestamp=click.timestamp,
        )
        
        logger.info(
            f"Alert {event.alert_id} for {account_id}: {event.ip} "
            f"{event.pattern.value} ({event.severity.value}, p={event.score:.2f})"
        )
        
        try:
            await self.store.insert_alert(event)
        except Exception as e:
            logger.error(f"Could not record alert {event.alert_id}: {e}")
        
        if self.sink is not None:
            self._deliver(event)
        
        return event
    
    async def drain(self) -> None:
        """Wait for every in-flight sink delivery to finish."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
    
    def _deliver(self, event: AlertEvent) -> None:
        task = asyncio.create_task(self.sink.send(event))
        self._deliveries.add(task)
        task.add_done_callback(lambda t: self._delivery_done(event, t))
    
    def _delivery_done(self, event: AlertEvent, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        
        if task.cancelled():
            logger.warning(f"Delivery of alert {event.alert_id} was cancelled")
            return
        
        error = task.exception()
        if error is not None:
            logger.error(f"Delivery of alert {event.alert_id} failed: {error}")
            return
        
        result = task.result()
        if isinstance(result, DeliveryResult) and not result.delivered:
            logger.warning(
                f"Alert {event.alert_id} not delivered after {result.attempts} attempts: {result.error}"
            )
