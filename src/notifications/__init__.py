"""Notification intents and best-effort notifiers."""

from heritage.notifications.models import (
    TEMPLATES,
    EventKind,
    NotificationIntent,
    NotificationTemplate,
    Priority,
)
from heritage.notifications.notifier import (
    CompositeNotifier,
    LogNotifier,
    MemoryNotifier,
    Notifier,
    WebhookNotifier,
    build_notifier,
    dispatch,
)

__all__ = [
    "TEMPLATES",
    "CompositeNotifier",
    "EventKind",
    "LogNotifier",
    "MemoryNotifier",
    "NotificationIntent",
    "NotificationTemplate",
    "Notifier",
    "Priority",
    "WebhookNotifier",
    "build_notifier",
    "dispatch",
]
