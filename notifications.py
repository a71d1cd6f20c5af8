from __future__ import annotations

import json
import logging
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)


class NotificationFailure(RuntimeError):
    pass


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LogNotifier:
    def notify(self, title: str, body: str) -> None:
        logger.info(f"notification: title={title!r} body={body!r}")


class WebhookNotifier:
    """Posts ``{"title": ..., "body": ...}`` as JSON to a webhook URL."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def notify(self, title: str, body: str) -> None:
        payload = json.dumps({"title": title, "body": body}).encode("utf-8")
        req = Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
        except (URLError, TimeoutError, OSError) as exc:
            raise NotificationFailure(f"Failed to deliver notification: {title}") from exc
        if status >= 400:
            raise NotificationFailure(f"Notification endpoint returned {status}")


def default_notifier(url: Optional[str] = None) -> Notifier:
    settings = get_settings()
    target = url or settings.notify_webhook_url
    if target:
        return WebhookNotifier(target, timeout=settings.notify_timeout_secs)
    return LogNotifier()


def format_amount(cents: int) -> str:
    return f"{cents / 100:,.2f}"
