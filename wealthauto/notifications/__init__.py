"""Notifications module."""

from wealthauto.notifications.dispatcher import EventPayload, NotificationDispatcher, NotificationTransport
from wealthauto.notifications.preferences import PreferenceManager
from wealthauto.notifications.webhook import WebhookTransport

__all__ = [
    "EventPayload",
    "NotificationDispatcher",
    "NotificationTransport",
    "PreferenceManager",
    "WebhookTransport",
]
