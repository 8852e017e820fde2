"""Stripe plumbing shared by the webhook handlers and the payment initiator"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tokenpay.core.config import settings
from tokenpay.models.stripe_event import StripeEvent
from tokenpay.services import token_wallet_service

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION


class WebhookVerificationError(Exception):
    """Raised when an inbound webhook cannot be authenticated"""


@dataclass
class HandlerContext:
    """Collaborators handed to every webhook handler.

    ``gateway`` is the Stripe module in production; tests pass a Mock with the
    same surface (Subscription.retrieve, Product.retrieve, Price.list, ...).
    ``wallets`` exposes ``record_transaction`` and the wallet lookups.
    """
    db: Session
    gateway: Any = stripe
    wallets: Any = token_wallet_service


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def get_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    # StripeObject is a dict subclass; check mappings first so keys like
    # "items" are not shadowed by dict methods
    if isinstance(obj, dict):
        value = obj.get(key)
    else:
        value = getattr(obj, key, None)
    return default if value is None else value


def get_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field (plain id string or expanded object)."""
    if isinstance(value, str):
        return value or None
    return get_value(value, "id")


def from_timestamp(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def first_item(collection: Any) -> Any:
    """First element of a Stripe list object ({"data": [...]}) or plain list."""
    data = collection if isinstance(collection, list) else get_value(collection, "data", [])
    return data[0] if data else None


# ============================================================================
# WEBHOOK VERIFICATION
# ============================================================================

def verify_webhook_event(payload: bytes, sig_header: Optional[str], secret: Optional[str] = None,
                         tolerance: Optional[int] = None):
    """Authenticate a raw webhook body and return the parsed Stripe event.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Value of the ``stripe-signature`` header
        secret: Endpoint signing secret, defaults to STRIPE_WEBHOOK_SECRET
        tolerance: Maximum signature age in seconds

    Returns:
        stripe.Event

    Raises:
        WebhookVerificationError: secret not configured, header missing,
            payload malformed, signature mismatch or timestamp outside tolerance
    """
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if tolerance is None:
        tolerance = settings.STRIPE_WEBHOOK_TOLERANCE

    if not secret:
        logger.error("Webhook secret not configured")
        raise WebhookVerificationError("Webhook secret not configured")
    if not sig_header:
        raise WebhookVerificationError("Missing stripe-signature header")

    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=tolerance)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookVerificationError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise WebhookVerificationError("Invalid signature") from e


# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> Optional[StripeEvent]:
    """Record a delivery in the audit log. Redeliveries bump ``delivery_count``."""
    try:
        stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
        if stripe_event:
            stripe_event.delivery_count = (stripe_event.delivery_count or 1) + 1
        else:
            stripe_event = StripeEvent(
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=False
            )
            db.add(stripe_event)
        db.commit()
        return stripe_event
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not write audit log entry for event {event_id}: {e}")
        return None


def mark_stripe_event_processed(event_id: str, db: Session, outcome: str = None, error_message: str = None):
    try:
        stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
        if stripe_event:
            stripe_event.processed = True
            stripe_event.processed_at = datetime.now(timezone.utc)
            stripe_event.outcome = outcome
            stripe_event.error_message = error_message
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not update audit log entry for event {event_id}: {e}")
