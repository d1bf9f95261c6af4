"""Notifiers: best-effort delivery of notification intents.

Delivery is fire-and-forget relative to the workflow: ``dispatch`` never
raises, it logs each failed send and moves on.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Iterable

from heritage.config import NotificationConfig
from heritage.notifications.models import NotificationIntent, Priority

logger = logging.getLogger(__name__)

_NTFY_PRIORITY: dict[Priority, str] = {
    Priority.LOW: "2",
    Priority.MEDIUM: "3",
    Priority.HIGH: "4",
    Priority.URGENT: "5",
}


class Notifier(ABC):
    """Base class for notification delivery channels."""

    @abstractmethod
    def send(self, intent: NotificationIntent) -> None:
        """Deliver one intent.  May raise; ``dispatch`` absorbs failures."""


class LogNotifier(Notifier):
    """Writes every intent to the log."""

    def send(self, intent: NotificationIntent) -> None:
        title, message = intent.render()
        logger.info(
            "Notify %s%s [%s]: %s | %s",
            intent.recipient_role.value,
            f" ({intent.recipient_id})" if intent.recipient_id else "",
            intent.event_kind.value,
            title,
            message,
        )


class MemoryNotifier(Notifier):
    """Collects intents in a list; handy for embedding and tests."""

    def __init__(self) -> None:
        self.sent: list[NotificationIntent] = []

    def send(self, intent: NotificationIntent) -> None:
        self.sent.append(intent)


class WebhookNotifier(Notifier):
    """Posts intents to a Slack incoming webhook and/or an ntfy topic."""

    def __init__(self, config: NotificationConfig) -> None:
        self.config = config

    def _post(self, url: str, body: bytes, headers: dict[str, str]) -> None:
        req = urllib.request.Request(url, data=body, method="POST", headers=headers)
        with urllib.request.urlopen(req, timeout=self.config.timeout) as resp:
            resp.read()

    def send(self, intent: NotificationIntent) -> None:
        title, message = intent.render()
        if self.config.slack_webhook:
            payload = {"text": f"*{title}*\n{message}"}
            self._post(
                self.config.slack_webhook,
                json.dumps(payload).encode("utf-8"),
                {"Content-Type": "application/json"},
            )
        if self.config.ntfy_url:
            url = f"{self.config.ntfy_url.rstrip('/')}/{self.config.ntfy_topic}"
            self._post(
                url,
                message.encode("utf-8"),
                {
                    "Title": title,
                    "Priority": _NTFY_PRIORITY[intent.priority],
                    "Tags": intent.event_kind.value,
                },
            )


class CompositeNotifier(Notifier):
    """Fans an intent out to several notifiers.

    Each child is tried even if an earlier one fails; the first failure
    is re-raised afterwards.
    """

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self.notifiers = list(notifiers)

    def send(self, intent: NotificationIntent) -> None:
        first_error: Exception | None = None
        for notifier in self.notifiers:
            try:
                notifier.send(intent)
            except Exception as exc:
                logger.warning(
                    "%s failed to send %s for %s",
                    type(notifier).__name__,
                    intent.event_kind.value,
                    intent.record_id,
                    exc_info=True,
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


def build_notifier(config: NotificationConfig) -> Notifier:
    """Pick the notifier described by the ``[notifications]`` config."""
    if not config.is_configured:
        return LogNotifier()
    return CompositeNotifier([LogNotifier(), WebhookNotifier(config)])


def dispatch(intents: Iterable[NotificationIntent], notifier: Notifier | None) -> int:
    """Deliver intents best-effort and return how many were sent.

    Never raises: a failed delivery is logged and does not affect the
    transition that produced it.
    """
    if notifier is None:
        return 0
    delivered = 0
    for intent in intents:
        try:
            notifier.send(intent)
        except (urllib.error.URLError, OSError, ValueError, RuntimeError):
            logger.warning(
                "Failed to deliver %s notification for %s",
                intent.event_kind.value,
                intent.record_id,
                exc_info=True,
            )
        except Exception:
            logger.exception(
                "Unexpected error delivering %s notification for %s",
                intent.event_kind.value,
                intent.record_id,
            )
        else:
            delivered += 1
    return delivered
