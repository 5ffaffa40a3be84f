"""Row models for the durable click store."""

import uuid
from datetime import datetime, UTC
from typing import Optional
from pydantic import BaseModel, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ClickEvent(BaseModel):
    """
    A single ad click as delivered by the ad network ingestion job.
    
    Read-only to the scoring core: enrichment produces a new copy
    instead of mutating the original event.
    """
    
    click_id: str = Field(
        default_factory=lambda: f"click_{uuid.uuid4().hex[:12]}",
        description="Unique click identifier"
    )
    account_id: str = Field(description="Monitored ad account")
    ip_address: str = Field(description="Client IP address")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the click happened"
    )
    device_type: str = Field(default="UNKNOWN", description="MOBILE, DESKTOP, TABLET or UNKNOWN")
    country_code: str = Field(default="XX", description="ISO country code")
    cost_micros: int = Field(default=0, ge=0, description="Click cost in micro-currency units")
    campaign_id: Optional[str] = Field(default=None)
    
    # Network signals
    is_vpn: bool = Field(default=False)
    is_hosting: bool = Field(default=False)
    risk_score: int = Field(default=0, ge=0, le=100, description="IP risk score")
    
    # Prior label, if the network already flagged the click
    is_fraud: Optional[bool] = Field(default=None)
    
    @field_validator("timestamp")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class FraudDetection(BaseModel):
    """A fraud detection attached to a click. Its existence labels the click as fraud."""
    
    detection_id: str = Field(
        default_factory=lambda: f"det_{uuid.uuid4().hex[:12]}",
    )
    click_id: str = Field(description="Click this detection refers to")
    account_id: str = Field(description="Monitored ad account")
    pattern_type: str = Field(description="Detected pattern, e.g. RAPID_REPEAT")
    severity: str = Field(default="medium", description="critical, high, medium, low")
    fraud_score: float = Field(default=0.0, ge=0.0, le=100.0)
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    
    @field_validator("detected_at")
    @classmethod
    def _normalise_detected_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)
