"""Feature Extraction - turns click events into fixed-order feature vectors."""

import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional, Protocol

from clickguard.scoring.models import FeatureVector
from clickguard.storage.models import ClickEvent


logger = logging.getLogger(__name__)


DEVICE_TYPE_CODES = {
    "MOBILE": 0,
    "DESKTOP": 1,
    "TABLET": 2,
    "UNKNOWN": 3,
}
UNKNOWN_DEVICE_CODE = 3

# Country risk tiers: high = 3, medium = 2, everything else = 1
HIGH_RISK_COUNTRY_TIER = frozenset({"CN", "RU", "VN", "IN", "BD", "PK"})
MEDIUM_RISK_COUNTRY_TIER = frozenset({"BR", "TR", "ID", "NG", "PH"})

NO_PRIOR_CLICK_SECONDS = 9999
IP_CLICK_WINDOW = timedelta(hours=24)

# Neutral values for the history-based features when no history is queried
STATIC_TIME_SINCE_LAST_CLICK = 0
STATIC_CLICKS_FROM_IP = 1


class ClickHistory(Protocol):
    """Historical click queries needed for real-time features."""
    
    async def get_previous_click_time(
        self, account_id: str, ip_address: str, before: datetime
    ) -> Optional[datetime]:
        ...
    
    async def count_clicks_from_ip(
        self, account_id: str, ip_address: str, since: datetime
    ) -> int:
        ...


def encode_device_type(device_type: Optional[str]) -> int:
    return DEVICE_TYPE_CODES.get((device_type or "").upper(), UNKNOWN_DEVICE_CODE)


def get_country_risk(country_code: Optional[str]) -> int:
    code = (country_code or "").upper()
    if code in HIGH_RISK_COUNTRY_TIER:
        return 3
    if code in MEDIUM_RISK_COUNTRY_TIER:
        return 2
    return 1


def day_of_week(timestamp: datetime) -> int:
    """Day index with Sunday = 0."""
    return (timestamp.weekday() + 1) % 7


class FeatureExtractor:
    """
    Builds feature vectors for training and inference.
    
    extract_features() is pure and O(1). extract_real_time_features()
    adds the two history-based features, queried concurrently.
    """
    
    def __init__(
        self,
        history: ClickHistory,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.history = history
        self._clock = clock
    
    def extract_features(self, click: ClickEvent) -> FeatureVector:
        """Static features of a click (history-based ones at neutral values)."""
        timestamp = click.timestamp.astimezone(UTC)
        
        return FeatureVector(
            hour_of_day=timestamp.hour,
            day_of_week=day_of_week(timestamp),
            is_vpn=1 if click.is_vpn else 0,
            is_hosting=1 if click.is_hosting else 0,
            risk_score=click.risk_score or 0,
            country_risk=get_country_risk(click.country_code),
            time_since_last_click_seconds=STATIC_TIME_SINCE_LAST_CLICK,
            clicks_from_ip_24h=STATIC_CLICKS_FROM_IP,
            device_type_code=encode_device_type(click.device_type),
        )
    
    async def extract_real_time_features(self, account_id: str, click: ClickEvent) -> FeatureVector:
        """
        Full feature vector including click history.
        
        Args:
            account_id: Account whose history is queried
            click: Click being scored
            
        Returns:
            FeatureVector with time since the previous click from the same IP
            (9999 if none) and the IP's click count over the last 24 hours
        """
        base = self.extract_features(click)
        
        time_since_last, clicks_from_ip = await asyncio.gather(
            self.get_time_since_last_click(account_id, click),
            self.history.count_clicks_from_ip(
                account_id, click.ip_address, self._clock() - IP_CLICK_WINDOW
            ),
        )
        
        return base.model_copy(update={
            "time_since_last_click_seconds": time_since_last,
            "clicks_from_ip_24h": clicks_from_ip,
        })
    
    async def get_time_since_last_click(self, account_id: str, click: ClickEvent) -> int:
        """Whole seconds since the previous click from the same IP, or 9999."""
        previous = await self.history.get_previous_click_time(
            account_id, click.ip_address, click.timestamp
        )
        if previous is None:
            return NO_PRIOR_CLICK_SECONDS
        
        elapsed = (click.timestamp - previous).total_seconds()
        return max(0, int(elapsed))
