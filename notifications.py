from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader, select_autoescape

from amounts import format_amount
from config import get_settings


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"
RESEND_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    template: str
    context: dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    def send(self, notification: Notification) -> bool: ...


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["currency"] = format_amount
    return env


def render(notification: Notification) -> str:
    template = _environment().get_template(f"{notification.template}.html")
    return template.render(subject=notification.subject, **notification.context)


class LogNotificationSender:
    """Used when no email provider is configured."""

    def send(self, notification: Notification) -> bool:
        render(notification)
        logger.info(
            f"notification_logged: to={notification.recipient} "
            f"subject={notification.subject!r} template={notification.template}"
        )
        return True


class ResendNotificationSender:
    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "from": self.sender,
            "to": [notification.recipient],
            "subject": notification.subject,
            "html": render(notification),
        }
        req = Request(
            RESEND_URL,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = resp.status
        except (URLError, TimeoutError, OSError) as exc:
            logger.warning(
                f"notification_failed: to={notification.recipient} error={exc!r}"
            )
            return False
        if status >= 300:
            logger.warning(
                f"notification_failed: to={notification.recipient} status={status}"
            )
            return False
        return True


def default_sender(settings: Optional[Any] = None) -> NotificationSender:
    settings = settings or get_settings()
    if settings.resend_api_key:
        return ResendNotificationSender(
            settings.resend_api_key,
            settings.email_from,
            timeout=settings.email_timeout_secs,
        )
    return LogNotificationSender()
