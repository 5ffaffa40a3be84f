"""ClickGuard configuration."""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClickGuardConfig(BaseSettings):
    """Configuration for the fraud-scoring core."""
    
    model_config = SettingsConfigDict(
        env_prefix="CLICKGUARD_",
        env_file=".env",
        extra="ignore",  # Ignore extra fields from .env
        populate_by_name=True,
    )
    
    # Service settings
    host: str = "127.0.0.1"
    port: int = 8002
    db_path: str = ":memory:"
    log_level: str = "INFO"
    
    # External lookups (ip-api.com allows 45 requests/minute)
    geo_api_url: str = "http://ip-api.com/json"
    vpn_api_url: str = "https://v2.api.iphub.info/ip"
    vpn_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CLICKGUARD_VPN_API_KEY", "IPHUB_API_KEY"),
    )
    lookup_timeout_seconds: float = 5.0
    min_lookup_interval_seconds: float = 1.5
    
    # Enrichment cache
    enrichment_cache_size: int = 1000
    enrichment_ttl_hours: int = 24
    
    # Optimization layer
    default_cache_ttl_seconds: int = 300
    ml_cache_ttl_seconds: int = 600
    batch_size: int = 50
    batch_delay_seconds: float = 0.1
    
    # Model training
    min_training_samples: int = 100
    training_history_limit: int = 5000
    retrain_min_recent_clicks: int = 200
    retrain_window_days: int = 7
    
    # Alerts
    default_alert_threshold: float = 0.7
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_max_attempts: int = 5
    webhook_base_delay_seconds: float = 1.0
    webhook_max_delay_seconds: float = 60.0


config = ClickGuardConfig()
