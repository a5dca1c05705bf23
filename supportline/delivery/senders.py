"""Per-channel senders that hand formatted text to a provider HTTP API.

Senders classify every failure: timeouts, connection errors, ``429`` and
``5xx`` responses are :class:`DeliveryTransientError` (worth retrying); other
``4xx`` responses and unusable destinations are
:class:`DeliveryPermanentError`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from ..config import SupportSettings
from ..conversations.models import Channel, DeliveryStatus
from ..errors import DeliveryPermanentError, DeliveryTransientError

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    external_id: str | None
    status: DeliveryStatus = DeliveryStatus.SENT


class Sender(Protocol):
    def send(
        self, destination: str, text: str, *, subject: str | None = None
    ) -> SendResult: ...


class HttpSender:
    """Shared JSON-over-HTTP plumbing for the provider senders."""

    def __init__(
        self,
        url: str | None,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.url:
            raise DeliveryPermanentError(f"{type(self).__name__} has no endpoint configured")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise DeliveryTransientError(f"provider unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise DeliveryPermanentError(f"request could not be sent: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise DeliveryTransientError(
                f"provider returned {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise DeliveryPermanentError(
                f"provider rejected message with {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


class EmailSender(HttpSender):
    """Send e-mail through a transactional e-mail HTTP API."""

    def __init__(self, url: str | None, *, sender_address: str, **kwargs: Any) -> None:
        super().__init__(url, **kwargs)
        self.sender_address = sender_address

    def send(self, destination: str, text: str, *, subject: str | None = None) -> SendResult:
        if "@" not in (destination or ""):
            raise DeliveryPermanentError(f"not an e-mail address: {destination!r}")
        subject = subject or "Re: your support request"
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"
        body = self._post(
            {"from": self.sender_address, "to": destination, "subject": subject, "text": text}
        )
        return SendResult(external_id=_first(body, "id", "message_id"))


class ChatSender(HttpSender):
    """Send chat messages through a WhatsApp-style Graph messages endpoint."""

    def send(self, destination: str, text: str, *, subject: str | None = None) -> SendResult:
        digits = re.sub(r"\D", "", destination or "")
        if not digits:
            raise DeliveryPermanentError(f"not a phone number: {destination!r}")
        body = self._post(
            {
                "messaging_product": "whatsapp",
                "to": digits,
                "type": "text",
                "text": {"body": text[:4096]},
            }
        )
        messages = body.get("messages") or [{}]
        return SendResult(external_id=messages[0].get("id"))


class WebNotificationSender(HttpSender):
    """Post replies to the web widget's notification endpoint."""

    def send(self, destination: str, text: str, *, subject: str | None = None) -> SendResult:
        if not destination:
            raise DeliveryPermanentError("web reply has no recipient")
        body = self._post({"recipient": destination, "subject": subject, "message": text})
        status = DeliveryStatus.DELIVERED if body.get("status") == "delivered" else DeliveryStatus.SENT
        return SendResult(external_id=_first(body, "id", "notification_id"), status=status)


def _first(body: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = body.get(key)
        if value:
            return str(value)
    return None


def build_senders(
    settings: SupportSettings, session: requests.Session | None = None
) -> dict[Channel, Sender]:
    """Create the sender for every channel from configuration."""

    session = session or requests.Session()
    timeout = settings.sender_timeout_seconds
    return {
        Channel.EMAIL: EmailSender(
            settings.email_api_url,
            sender_address=settings.email_from,
            token=settings.email_api_key,
            timeout=timeout,
            session=session,
        ),
        Channel.CHAT: ChatSender(
            settings.chat_api_url, token=settings.chat_api_token, timeout=timeout, session=session
        ),
        Channel.WEB_FORM: WebNotificationSender(
            settings.web_notify_url, timeout=timeout, session=session
        ),
    }


__all__ = [
    "ChatSender",
    "EmailSender",
    "HttpSender",
    "SendResult",
    "Sender",
    "WebNotificationSender",
    "build_senders",
]
