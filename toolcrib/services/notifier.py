import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from toolcrib.config import settings
from toolcrib.db import backoff_delay
from toolcrib.schemas import NotificationKind

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, kind: NotificationKind, payload: dict[str, Any]) -> None: ...


@dataclass
class Notification:
    kind: NotificationKind
    payload: dict[str, Any] = field(default_factory=dict)


class LogNotifier:
    def send(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info("notification %s: %s", kind.value, payload)


class HttpNotifier:
    """Posts notifications to an e-mail relay endpoint."""

    def __init__(self, url: str, timeout: float | None = None):
        self.url = url
        self.timeout = timeout or settings.notifier_timeout

    def send(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        body = {"type": kind.value, **payload}
        resp = httpx.post(self.url, json=body, timeout=self.timeout)
        resp.raise_for_status()


def default_notifier() -> Notifier:
    if settings.notifier_url:
        return HttpNotifier(settings.notifier_url)
    return LogNotifier()


def dispatch(notifier: Notifier, notifications: list[Notification]) -> int:
    """Deliver queued notifications after commit. Best effort: failures are logged.

    Returns how many were delivered.
    """
    delivered = 0
    attempts = max(1, settings.notification_retry_attempts)
    for note in notifications:
        for attempt in range(1, attempts + 1):
            try:
                notifier.send(note.kind, note.payload)
                delivered += 1
                break
            except Exception:
                if attempt == attempts:
                    logger.exception("notification %s dropped after %s attempts", note.kind.value, attempts)
                else:
                    time.sleep(backoff_delay(attempt))
    return delivered
