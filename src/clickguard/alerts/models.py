"""Alert models."""

import uuid
from datetime import datetime, UTC
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class AlertSeverity(str, Enum):
    """Severity of a fraud alert, from the click's fraud probability."""
    
    CRITICAL = "critical"    # >= 0.90
    HIGH = "high"            # >= 0.75
    MEDIUM = "medium"        # >= 0.50
    LOW = "low"


class AlertPattern(str, Enum):
    """Dominant signal behind an alert."""
    
    NETWORK_ANONYMIZER = "NETWORK_ANONYMIZER"    # VPN, proxy or Tor
    DATA_CENTER = "DATA_CENTER"                  # Hosting provider IP
    RAPID_REPEAT = "RAPID_REPEAT"                # Same IP clicked again within a minute
    IP_BURST = "IP_BURST"                        # Many clicks from one IP in 24h
    OFF_HOURS = "OFF_HOURS"                      # 00:00-05:59 UTC
    ML_SCORE = "ML_SCORE"                        # Model score alone


class AlertEvent(BaseModel):
    """Payload handed to the webhook collaborator."""
    
    alert_id: str = Field(
        default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}",
    )
    account_id: str
    click_id: Optional[str] = Field(default=None)
    ip: str
    score: float = Field(ge=0.0, le=1.0, description="Fraud probability")
    pattern: AlertPattern
    severity: AlertSeverity
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeliveryResult(BaseModel):
    """Outcome of a webhook delivery."""
    
    delivered: bool
    attempts: int = Field(ge=0)
    status_code: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None)
