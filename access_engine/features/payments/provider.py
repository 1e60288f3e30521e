"""
Payment provider protocol.

Defines the interface for payment-link providers (Stripe, mock).
The workflow only needs a link for an amount and, later, a
confirmed/failed/refunded signal keyed by our order id.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class PaymentLink:
    """A hosted payment page issued for one request order."""
    link_id: str
    url: str
    gateway_order_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class PaymentWebhookResult:
    """Result of verifying and parsing a provider webhook."""
    event_id: str
    event_type: str
    status: Optional[str]  # "paid" | "failed" | "expired" | "refunded" | None (ignored)
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_link_id: Optional[str] = None
    amount: Optional[float] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Payment link creation with correlation metadata
    - Deactivating links whose payment window has closed
    - Webhook signature verification and parsing
    """

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
        """
        Create a hosted payment link.

        Args:
            amount: Amount in major units (rupees)
            currency: ISO currency code
            description: Line shown to the payer
            customer_name: Payer display name
            customer_phone: 10-digit phone
            reference_id: Our order id, echoed back in webhooks
            notes: Correlation metadata (order id, features, duration)
            expires_at: When the link stops accepting payments

        Raises:
            PaymentProviderError: If link creation fails
        """
        ...

    def deactivate_payment_link(self, link_id: str) -> None:
        """
        Stop a hosted link from accepting payments once its window closes.

        Raises:
            PaymentProviderError: If the gateway call fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            PaymentWebhookError: If signature invalid or parsing fails
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook processing errors."""
    pass
