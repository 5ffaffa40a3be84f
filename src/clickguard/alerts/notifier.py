"""Webhook Notifier - delivers alert events with retry and HMAC signing."""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, UTC
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from clickguard.alerts.models import AlertEvent, DeliveryResult
from clickguard.config import config


logger = logging.getLogger(__name__)


ALERT_EVENT_TYPE = "alert.triggered"
SIGNATURE_HEADER = "X-Signature"


class AlertSink(Protocol):
    """Anything that can deliver an alert event."""
    
    async def send(self, event: AlertEvent) -> DeliveryResult:
        ...


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of a request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """
    Posts alert events to a webhook URL.
    
    Retries failed deliveries with exponential backoff
    (base * 2**attempt, capped at max_delay). Never raises.
    """
    
    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url or config.webhook_url
        self.secret = secret or config.webhook_secret
        self.max_attempts = max_attempts or config.webhook_max_attempts
        self.base_delay = config.webhook_base_delay_seconds if base_delay is None else base_delay
        self.max_delay = config.webhook_max_delay_seconds if max_delay is None else max_delay
        self._client = client
        self._sleep = sleep
    
    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1` (attempt is 0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)
    
    def build_body(self, event: AlertEvent) -> bytes:
        payload = {
            "event": ALERT_EVENT_TYPE,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": event.model_dump(mode="json"),
        }
        return json.dumps(payload, sort_keys=True).encode()
    
    async def send(self, event: AlertEvent) -> DeliveryResult:
        """
        Deliver an alert event.
        
        Returns:
            DeliveryResult; delivered is False after exhausting retries
        """
        if not self.url:
            return DeliveryResult(delivered=False, attempts=0, error="no webhook url configured")
        
        body = self.build_body(event)
        headers = {"Content-Type": "application/json", "X-Event-Type": ALERT_EVENT_TYPE}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.secret, body)
        
        last_error: Optional[str] = None
        last_status: Optional[int] = None
        
        for attempt in range(self.max_attempts):
            try:
                response = await self._post(body, headers)
                last_status = response.status_code
                response.raise_for_status()
                
                logger.info(f"Alert {event.alert_id} delivered (attempt {attempt + 1})")
                return DeliveryResult(
                    delivered=True,
                    attempts=attempt + 1,
                    status_code=response.status_code,
                )
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Webhook delivery failed for {event.alert_id} "
                    f"(attempt {attempt + 1}/{self.max_attempts}): {last_error}"
                )
            
            if attempt + 1 < self.max_attempts:
                await self._sleep(self.backoff_delay(attempt))
        
        logger.error(f"Giving up on alert {event.alert_id} after {self.max_attempts} attempts")
        return DeliveryResult(
            delivered=False,
            attempts=self.max_attempts,
            status_code=last_status,
            error=last_error,
        )
    
    async def _post(self, body: bytes, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, content=body, headers=headers, timeout=10.0)
        async with httpx.AsyncClient() as client:
            return await client.post(self.url, content=body, headers=headers, timeout=10.0)
