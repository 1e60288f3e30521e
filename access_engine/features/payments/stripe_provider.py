"""
Stripe payment provider implementation.

Implements PaymentProvider using Stripe Payment Links.
Handles webhook signature verification and event parsing.
"""
import os
from typing import Dict, Any, Optional
from datetime import datetime
import stripe

from access_engine.features.payments.provider import (
    PaymentLink,
    PaymentProviderError,
    PaymentWebhookError,
    PaymentWebhookResult,
)


def _to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        success_url: Optional[str] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            success_url: Where Stripe redirects after payment
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.success_url = success_url

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

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
        """Create a one-off Stripe price and a payment link for it.

        Stripe payment links have no expiry of their own; ``expires_at`` is
        recorded in metadata and enforced by deactivate_payment_link.
        """
        metadata = {
            **notes,
            "order_id": reference_id,
            "customer_phone": customer_phone,
            "expires_at": expires_at.isoformat(),
        }
        try:
            price = stripe.Price.create(
                currency=currency.lower(),
                unit_amount=_to_minor_units(amount),
                product_data={"name": description, "metadata": {"order_id": reference_id}},
            )
            link_params: Dict[str, Any] = {
                "line_items": [{"price": price.id, "quantity": 1}],
                "metadata": metadata,
                "payment_intent_data": {"metadata": metadata},
                "restrictions": {"completed_sessions": {"limit": 1}},
            }
            if self.success_url:
                link_params["after_completion"] = {
                    "type": "redirect",
                    "redirect": {"url": self.success_url},
                }
            link = stripe.PaymentLink.create(**link_params)
        except stripe.error.StripeError as e:
            raise PaymentProviderError(f"Stripe payment link creation failed: {e}")

        return PaymentLink(
            link_id=link.id,
            url=link.url,
            gateway_order_id=price.id,
            expires_at=expires_at,
        )

    def deactivate_payment_link(self, link_id: str) -> None:
        try:
            stripe.PaymentLink.modify(link_id, active=False)
        except stripe.error.StripeError as e:
            raise PaymentProviderError(f"Stripe payment link deactivation failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        try:
            sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
            if not sig_header:
                raise PaymentWebhookError("Missing stripe-signature header")

            event = stripe.Webhook.construct_event(
                body, sig_header, self.webhook_secret
            )
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.error.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> PaymentWebhookResult:
        """Parse Stripe event into normalized PaymentWebhookResult."""
        event_type = event["type"]
        event_id = event["id"]
        data = event.get("data", {}).get("object", {})
        metadata = dict(data.get("metadata") or {})

        status = None
        payment_id = None
        failure_reason = None
        amount = None

        if event_type == "checkout.session.completed":
            if data.get("payment_status") == "paid":
                status = "paid"
            payment_id = data.get("payment_intent") or data.get("id")
            if data.get("amount_total") is not None:
                amount = data["amount_total"] / 100
        elif event_type == "checkout.session.expired":
            status = "expired"
            failure_reason = "Checkout session expired"
        elif event_type == "payment_intent.payment_failed":
            status = "failed"
            payment_id = data.get("id")
            error = data.get("last_payment_error") or {}
            failure_reason = error.get("message") or "Payment failed"
        elif event_type == "charge.refunded":
            status = "refunded"
            payment_id = data.get("payment_intent") or data.get("id")

        return PaymentWebhookResult(
            event_id=event_id,
            event_type=event_type,
            status=status,
            order_id=metadata.get("order_id"),
            payment_id=payment_id,
            payment_link_id=data.get("payment_link"),
            amount=amount,
            failure_reason=failure_reason,
            metadata=metadata,
        )
