"""
Mock payment provider for local development and tests.

Links point back at this service; webhooks are plain JSON
(``{"id", "type", "order_id", "payment_id"}``) with no signature.
"""
import json
import secrets
from datetime import datetime
from typing import Dict

from access_engine.features.payments.provider import (
    PaymentLink,
    PaymentWebhookError,
    PaymentWebhookResult,
)

_STATUS_BY_TYPE = {
    "payment.captured": "paid",
    "payment_link.paid": "paid",
    "payment.failed": "failed",
    "payment_link.expired": "expired",
    "refund.processed": "refunded",
}


class MockPaymentProvider:
    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url.rstrip("/")
        self.links: list[dict] = []
        self.deactivated: list[str] = []

    def create_payment_link(
        self,
        *,
        amount: float,
        currency: str,
        description: str,
        customer_name: str,
        customer_phone: str,
        reference_id: str,
        notes: Dict[str, str],
        expires_at: datetime,
    ) -> PaymentLink:
        link_id = f"plink_mock_{secrets.token_hex(8)}"
        self.links.append(
            {"link_id": link_id, "amount": amount, "currency": currency, "reference_id": reference_id, "notes": notes}
        )
        return PaymentLink(
            link_id=link_id,
            url=f"{self.base_url}/mock-pay/{link_id}",
            gateway_order_id=f"order_mock_{secrets.token_hex(8)}",
            expires_at=expires_at,
        )

    def deactivate_payment_link(self, link_id: str) -> None:
        self.deactivated.append(link_id)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookResult:
        try:
            event = json.loads(body or b"{}")
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise PaymentWebhookError("Webhook must include 'id' and 'type'")

        event_type = event["type"]
        return PaymentWebhookResult(
            event_id=str(event["id"]),
            event_type=event_type,
            status=_STATUS_BY_TYPE.get(event_type),
            order_id=event.get("order_id"),
            payment_id=event.get("payment_id"),
            payment_link_id=event.get("payment_link_id"),
            amount=event.get("amount"),
            failure_reason=event.get("reason"),
            metadata=event.get("notes") or {},
        )
