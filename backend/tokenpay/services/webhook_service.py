"""Webhook entry point - verify, audit, dispatch"""
import json
import logging
from typing import Any, Callable, Dict

import stripe
from sqlalchemy.orm import Session

from tokenpay.core.logging import webhook_logger
from tokenpay.core.metrics import webhook_events_counter
from tokenpay.schemas.payments import PaymentConfirmation, Outcome
from tokenpay.services import token_wallet_service
from tokenpay.services.catalog_service import (
    handle_price_created, handle_price_updated, handle_price_deleted,
    handle_product_created, handle_product_updated, handle_product_deleted
)
from tokenpay.services.checkout_service import handle_checkout_session_completed, handle_checkout_session_expired
from tokenpay.services.invoice_service import handle_invoice_payment_succeeded, handle_invoice_payment_failed
from tokenpay.services.stripe_service import (
    HandlerContext, get_value, verify_webhook_event, log_stripe_event, mark_stripe_event_processed
)
from tokenpay.services.subscription_service import handle_subscription_updated, handle_subscription_deleted

logger = logging.getLogger(__name__)

Handler = Callable[[HandlerContext, Any], PaymentConfirmation]

EVENT_HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "checkout.session.expired": handle_checkout_session_expired,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "product.created": handle_product_created,
    "product.updated": handle_product_updated,
    "product.deleted": handle_product_deleted,
    "price.created": handle_price_created,
    "price.updated": handle_price_updated,
    "price.deleted": handle_price_deleted,
}


def dispatch_event(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Route a verified event to its handler; unknown types are acknowledged as no-ops"""
    event_type = get_value(event, "type")
    event_id = get_value(event, "id")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type {event_type} ({event_id}); acknowledging")
        result = PaymentConfirmation(
            success=True,
            transaction_id=event_id,
            message=f"Event type {event_type} is not handled.",
            outcome=Outcome.IGNORED
        )
    else:
        try:
            result = handler(ctx, event)
        except Exception as e:
            ctx.db.rollback()
            logger.error(f"Handler for {event_type} raised on event {event_id}: {e}", exc_info=True)
            result = PaymentConfirmation(
                success=False, transaction_id=event_id, error=str(e), outcome=Outcome.INTERNAL_ERROR
            )

    webhook_events_counter.labels(event_type=event_type or "unknown", outcome=result.outcome.value).inc()
    log = webhook_logger.info if result.success else webhook_logger.error
    log(f"Event {event_id} ({event_type}) -> {result.outcome.value}" + (f": {result.error}" if result.error else ""))
    return result


def process_stripe_webhook(
    payload: bytes,
    sig_header: str,
    db: Session,
    gateway: Any = stripe,
    wallets: Any = token_wallet_service
) -> PaymentConfirmation:
    """Process a Stripe webhook delivery

    Validates the signature, writes the audit log entry and runs the handler
    for the event type. Redeliveries always go through the handler again; its
    own idempotency checks decide the outcome.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session
        gateway: Stripe client used by the handlers
        wallets: Token wallet service used by the handlers

    Returns:
        PaymentConfirmation from the handler

    Raises:
        WebhookVerificationError: For missing secret, invalid payload or signature
    """
    event = verify_webhook_event(payload, sig_header)
    event_id = get_value(event, "id")
    event_type = get_value(event, "type")

    log_stripe_event(event_id, event_type, json.loads(payload), db)

    ctx = HandlerContext(db=db, gateway=gateway, wallets=wallets)
    result = dispatch_event(ctx, event)

    mark_stripe_event_processed(event_id, db, outcome=result.outcome.value, error_message=result.error)
    return result
