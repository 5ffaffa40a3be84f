"""Alerts module for ClickGuard - threshold alerts and webhook delivery."""

from clickguard.alerts.models import AlertEvent, AlertPattern, AlertSeverity, DeliveryResult
from clickguard.alerts.notifier import WebhookNotifier, sign_payload
from clickguard.alerts.dispatcher import AlertDispatcher, classify_pattern, severity_for

__all__ = [
    "AlertEvent",
    "AlertPattern",
    "AlertSeverity",
    "DeliveryResult",
    "WebhookNotifier",
    "sign_payload",
    "AlertDispatcher",
    "classify_pattern",
    "severity_for",
]
