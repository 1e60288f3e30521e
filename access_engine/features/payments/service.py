"""
Payment provider selection and webhook processing.

Webhooks are deduplicated on the provider's event id (payment_events table),
then dispatched by normalized status:
- paid     -> confirm_payment (idempotent on our order id as well)
- failed   -> record_payment_failure
- refunded -> refund_order
- expired / unknown types are recorded and ignored
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from access_engine.core.config import Settings, settings
from access_engine.core.database import get_db_session, payment_events
from access_engine.core.errors import InvalidStateError
from access_engine.core.logging import log_event
from access_engine.features.payments.mock_provider import MockPaymentProvider
from access_engine.features.payments.provider import (
    PaymentProvider,
    PaymentWebhookError,
    PaymentWebhookResult,
)
from access_engine.models.common import utc_now

logger = logging.getLogger(__name__)

_provider: Optional[PaymentProvider] = None


def get_payment_provider(settings_obj: Optional[Settings] = None) -> PaymentProvider:
    """Provider selected by PAYMENT_PROVIDER. Cached for the default settings."""
    global _provider
    cfg = settings_obj or settings
    if settings_obj is None and _provider is not None:
        return _provider

    name = (cfg.PAYMENT_PROVIDER or "mock").lower()
    if name == "stripe":
        from access_engine.features.payments.stripe_provider import StripeProvider

        provider: PaymentProvider = StripeProvider(
            secret_key=cfg.STRIPE_SECRET_KEY,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            success_url=cfg.PAYMENT_SUCCESS_URL,
        )
    else:
        provider = MockPaymentProvider(base_url=cfg.BASE_URL)

    if settings_obj is None:
        _provider = provider
    return provider


def set_payment_provider(provider: Optional[PaymentProvider]) -> None:
    """Override (or reset with None) the cached provider."""
    global _provider
    _provider = provider


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    action: str  # "confirmed" | "already_processed" | "late_payment_recorded" | "failure_recorded" | "refunded" | "ignored" | "duplicate"
    order_id: Optional[str] = None


def _apply(result: PaymentWebhookResult) -> str:
    # imported here: the workflow imports this module for provider selection
    from access_engine.features.feature_access.service import refund_order
    from access_engine.features.feature_requests.service import confirm_payment, record_payment_failure

    if result.status == "paid":
        if not result.order_id or not result.payment_id:
            raise PaymentWebhookError("Paid event is missing order_id or payment_id")
        try:
            confirmation = confirm_payment(result.order_id, result.payment_id)
        except InvalidStateError as e:
            if e.code != "payment_link_expired":
                raise
            # kept on the request as last_payment_error for an operator refund
            return "late_payment_recorded"
        return "already_processed" if confirmation.already_processed else "confirmed"
    if result.status == "failed":
        if not result.order_id:
            raise PaymentWebhookError("Failed event is missing order_id")
        record_payment_failure(result.order_id, result.failure_reason)
        return "failure_recorded"
    if result.status == "refunded":
        if not result.order_id:
            raise PaymentWebhookError("Refund event is missing order_id")
        refund_order(result.order_id, reason=result.failure_reason or "Payment refunded")
        return "refunded"
    return "ignored"


def process_payment_webhook(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[PaymentProvider] = None,
) -> WebhookOutcome:
    """
    Process a payment webhook (idempotent).

    1. Verify signature and parse
    2. Skip events already processed
    3. Record the event, apply it, mark it processed

    A failed application stores the error and re-raises; the provider's
    retry of the same event is processed again.

    Raises:
        PaymentWebhookError: invalid signature or payload
    """
    result = (provider or get_payment_provider()).handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body or b"").hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(payment_events.c.processed).where(payment_events.c.event_id == result.event_id)
        ).first()
    if existing is not None and existing.processed:
        logger.info("[payments] duplicate webhook", extra={"event_id": result.event_id, "event_type": result.event_type})
        return WebhookOutcome(result.event_id, result.event_type, "duplicate", result.order_id)

    if existing is None:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(payment_events).values(
                        event_id=result.event_id,
                        event_type=result.event_type,
                        order_id=result.order_id,
                        payload_hash=payload_hash,
                        processed=False,
                        received_at=utc_now(),
                    )
                )
        except IntegrityError:
            # another worker recorded the event first and owns it
            return WebhookOutcome(result.event_id, result.event_type, "duplicate", result.order_id)

    try:
        action = _apply(result)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(payment_events)
                .where(payment_events.c.event_id == result.event_id)
                .values(error=str(e)[:1000])
            )
        log_event(
            "error",
            "[payments] webhook processing failed",
            event_type=result.event_type,
            error_code=type(e).__name__,
            extra={"event_id": result.event_id, "order_id": result.order_id, "error_message": str(e)},
        )
        raise

    with get_db_session() as session:
        session.execute(
            update(payment_events)
            .where(payment_events.c.event_id == result.event_id)
            .values(processed=True, error=None, processed_at=utc_now())
        )

    logger.info(
        "[payments] webhook processed",
        extra={"event_id": result.event_id, "event_type": result.event_type, "order_id": result.order_id, "action": action},
    )
    return WebhookOutcome(result.event_id, result.event_type, action, result.order_id)
