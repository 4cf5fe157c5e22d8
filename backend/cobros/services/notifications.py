from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
import logging
from typing import Protocol
from urllib import request as urlrequest

from cobros.core.config import settings

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("welcome", "payment_success", "payment_failed", "renewal_reminder", "cancellation")


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str
    merchant_name: str
    data: dict = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, notification_type: str, recipient: Recipient) -> None:
        ...


class LogNotifier:
    def notify(self, notification_type: str, recipient: Recipient) -> None:
        logger.info(
            "notification %s to=%s merchant=%s data=%s",
            notification_type,
            recipient.email,
            recipient.merchant_name,
            json.dumps(recipient.data, default=str, ensure_ascii=False),
        )


class HttpNotifier:
    """Posts notifications to an outbound mail relay."""

    def __init__(self, url: str, *, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, notification_type: str, recipient: Recipient) -> None:
        body = json.dumps(
            {"type": notification_type, **asdict(recipient)},
            default=str,
        ).encode("utf-8")
        req = urlrequest.Request(
            url=self.url,
            method="POST",
            data=body,
            headers={"Content-Type": "application/json"},
        )
        with urlrequest.urlopen(req, timeout=self.timeout) as resp:
            resp.read()


def get_notifier() -> Notifier:
    provider = (settings.NOTIFICATIONS_PROVIDER or "log").strip().lower()
    if provider == "http" and settings.NOTIFICATIONS_WEBHOOK_URL:
        return HttpNotifier(settings.NOTIFICATIONS_WEBHOOK_URL, timeout=settings.NOTIFICATIONS_TIMEOUT_SECONDS)
    return LogNotifier()


def notify_safely(notifier: Notifier | None, notification_type: str, recipient: Recipient) -> bool:
    """Send a notification; failures are logged and never propagate."""
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Tipo de notificacion invalido: {notification_type}")
    try:
        (notifier or get_notifier()).notify(notification_type, recipient)
        return True
    except Exception:
        logger.exception("notification %s to %s failed", notification_type, recipient.email)
        return False
