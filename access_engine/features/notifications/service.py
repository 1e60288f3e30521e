"""
Payment-link notifications.

Delivery is out of band: the workflow calls ``send_payment_link`` after an
approval commits and only logs a failure.
"""
import logging
from typing import Optional, Protocol

import httpx

from access_engine.core.config import Settings, settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised by a notifier when a message could not be delivered."""


class Notifier(Protocol):
    def send_payment_link(
        self,
        *,
        phone: str,
        name: str,
        description: str,
        url: str,
        amount: float,
        request_id: str,
    ) -> None:
        ...


def payment_link_message(name: str, description: str, url: str, amount: float) -> str:
    return (
        f"Hi {name}, your request for {description} has been approved. "
        f"Complete the payment of Rs. {amount:.2f} here: {url}"
    )


class LoggingNotifier:
    """Used when notifications are disabled; records what would be sent."""

    def send_payment_link(self, *, phone, name, description, url, amount, request_id) -> None:
        logger.info(
            "[notify] payment link (not delivered, notifications disabled)",
            extra={"phone": phone, "request_ref": request_id, "url": url},
        )


class WhatsAppNotifier:
    """Posts a text message to a WhatsApp Business-style HTTP API."""

    def __init__(self, api_url: str, token: str, *, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        if not api_url or not token:
            raise NotificationError("WHATSAPP_API_URL and WHATSAPP_API_TOKEN are required")
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self._client = client

    def send_payment_link(self, *, phone, name, description, url, amount, request_id) -> None:
        payload = {
            "to": f"91{phone}",
            "type": "text",
            "text": {"body": payment_link_message(name, description, url, amount)},
            "reference": request_id,
        }
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            if self._client is not None:
                response = self._client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.api_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"WhatsApp delivery failed: {e}") from e

        logger.info("[notify] payment link sent", extra={"phone": phone, "request_ref": request_id})


def get_notifier(settings_obj: Optional[Settings] = None) -> Notifier:
    cfg = settings_obj or settings
    if cfg.NOTIFICATIONS_ENABLED and cfg.WHATSAPP_API_URL and cfg.WHATSAPP_API_TOKEN:
        return WhatsAppNotifier(
            cfg.WHATSAPP_API_URL,
            cfg.WHATSAPP_API_TOKEN,
            timeout=cfg.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return LoggingNotifier()
