"""Storage module for ClickGuard - durable click, label, enrichment and model store."""

from clickguard.storage.models import ClickEvent, FraudDetection
from clickguard.storage.store import ClickStore, StoreError

__all__ = [
    "ClickEvent",
    "FraudDetection",
    "ClickStore",
    "StoreError",
]
