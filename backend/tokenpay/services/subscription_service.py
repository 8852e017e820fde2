"""Subscription lifecycle handlers and UserSubscription persistence"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.models.user_subscription import UserSubscription
from tokenpay.schemas.payments import PaymentConfirmation, Outcome
from tokenpay.services.stripe_service import HandlerContext, get_value, get_id, from_timestamp, first_item

logger = logging.getLogger(__name__)

CANCELED_STATUS = "canceled"


def subscription_period(subscription: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Billing period of a Stripe subscription.

    Newer API versions report the period on each subscription item instead of
    the subscription itself.
    """
    start = get_value(subscription, "current_period_start")
    end = get_value(subscription, "current_period_end")
    if not start or not end:
        item = first_item(get_value(subscription, "items"))
        start = start or get_value(item, "current_period_start")
        end = end or get_value(item, "current_period_end")
    return from_timestamp(start), from_timestamp(end)


def subscription_price_id(subscription: Any) -> Optional[str]:
    item = first_item(get_value(subscription, "items"))
    return get_id(get_value(item, "price"))


def get_user_subscription(db: Session, stripe_subscription_id: str) -> Optional[UserSubscription]:
    return db.query(UserSubscription).filter(
        UserSubscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def find_subscription_owner(db: Session, stripe_subscription_id: Optional[str],
                            stripe_customer_id: Optional[str]) -> Optional[UserSubscription]:
    """Locate the local subscription for an invoice: by subscription id, then by customer"""
    if stripe_subscription_id:
        row = get_user_subscription(db, stripe_subscription_id)
        if row:
            return row
    if stripe_customer_id:
        return (
            db.query(UserSubscription)
            .filter(UserSubscription.stripe_customer_id == stripe_customer_id)
            .order_by(UserSubscription.created_at.desc())
            .first()
        )
    return None


def _apply_gateway_state(row: UserSubscription, subscription: Any):
    start, end = subscription_period(subscription)
    row.status = get_value(subscription, "status", row.status or "active")
    if start:
        row.current_period_start = start
    if end:
        row.current_period_end = end
    row.cancel_at_period_end = bool(get_value(subscription, "cancel_at_period_end", False))
    row.updated_at = datetime.now(timezone.utc)


def upsert_user_subscription(db: Session, user_id: str, stripe_subscription_id: str, stripe_customer_id: str,
                             subscription: Any, plan_id: Optional[str] = None,
                             organization_id: Optional[str] = None) -> UserSubscription:
    """
    Insert or update the UserSubscription for ``stripe_subscription_id``.

    Ownership (user_id, organization_id) and the customer link are only
    written when the row is created. Commits the session.

    Raises:
        SQLAlchemyError: if the write fails
    """
    row = get_user_subscription(db, stripe_subscription_id)
    if row is None:
        try:
            with db.begin_nested():
                row = UserSubscription(
                    user_id=user_id,
                    organization_id=organization_id,
                    stripe_subscription_id=stripe_subscription_id,
                    stripe_customer_id=stripe_customer_id,
                    plan_id=plan_id
                )
                _apply_gateway_state(row, subscription)
                db.add(row)
                db.flush()
            logger.info(f"Creating subscription record for user {user_id} with subscription {stripe_subscription_id}")
        except IntegrityError:
            # A concurrent delivery inserted it first
            row = get_user_subscription(db, stripe_subscription_id)
            if row is None:
                raise

    if row.user_id != user_id:
        logger.warning(
            f"Subscription {stripe_subscription_id} belongs to user {row.user_id}; "
            f"ignoring ownership claim from user {user_id}"
        )
    if plan_id:
        row.plan_id = plan_id
    _apply_gateway_state(row, subscription)
    db.commit()
    logger.info(f"✅ Subscription {stripe_subscription_id} synced. Status: {row.status}")
    return row


def refresh_subscription_from_gateway(ctx: HandlerContext, stripe_subscription_id: str) -> bool:
    """Best-effort status/period refresh used by the invoice handlers. Never raises."""
    try:
        subscription = ctx.gateway.Subscription.retrieve(stripe_subscription_id)
        row = get_user_subscription(ctx.db, stripe_subscription_id)
        if row is None:
            logger.warning(f"No local subscription {stripe_subscription_id} to refresh")
            return False
        _apply_gateway_state(row, subscription)
        ctx.db.commit()
        return True
    except Exception as e:
        ctx.db.rollback()
        logger.warning(f"Failed to refresh subscription {stripe_subscription_id} from Stripe: {e}")
        return False


def handle_subscription_updated(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Mirror status, period and cancel flag; relink the plan when the price maps to one"""
    event_id = get_value(event, "id")
    subscription = get_value(get_value(event, "data"), "object", {})
    sub_id = get_value(subscription, "id")
    if not sub_id:
        logger.error(f"Event {event_id}: subscription id missing")
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error="Subscription ID missing from event.", outcome=Outcome.VALIDATION_ERROR
        )

    db = ctx.db
    try:
        row = get_user_subscription(db, sub_id)
        if row is None:
            logger.warning(
                f"No user_subscription found for {sub_id}; checkout completion may not have been processed yet"
            )
            return PaymentConfirmation(
                success=True, transaction_id=event_id,
                message=f"No local subscription {sub_id} to update.", outcome=Outcome.IGNORED
            )

        price_id = subscription_price_id(subscription)
        plan = None
        if price_id:
            plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
        if plan is None:
            logger.warning(f"Plan not found for price {price_id} on subscription {sub_id}; keeping current plan link")
        else:
            row.plan_id = plan.id

        customer_id = get_id(get_value(subscription, "customer"))
        if customer_id and row.stripe_customer_id and customer_id != row.stripe_customer_id:
            logger.warning(
                f"Subscription {sub_id} reports customer {customer_id} but is linked to "
                f"{row.stripe_customer_id}; link left unchanged"
            )
        elif customer_id and not row.stripe_customer_id:
            row.stripe_customer_id = customer_id

        _apply_gateway_state(row, subscription)
        db.commit()
        logger.info(f"✅ Subscription {sub_id} updated. Status: {row.status}")
        return PaymentConfirmation(success=True, transaction_id=event_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error updating subscription {sub_id}: {e}", exc_info=True)
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error=f"DB error updating subscription {sub_id}: {e}", outcome=Outcome.INTERNAL_ERROR
        )


def handle_subscription_deleted(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    event_id = get_value(event, "id")
    subscription = get_value(get_value(event, "data"), "object", {})
    sub_id = get_value(subscription, "id")
    if not sub_id:
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error="Subscription ID missing from event.", outcome=Outcome.VALIDATION_ERROR
        )

    db = ctx.db
    try:
        row = get_user_subscription(db, sub_id)
        if row is None:
            logger.warning(f"No user_subscription found for deleted subscription {sub_id}")
            return PaymentConfirmation(
                success=True, transaction_id=event_id,
                message=f"No local subscription {sub_id} to cancel.", outcome=Outcome.IGNORED
            )
        row.status = CANCELED_STATUS
        row.cancel_at_period_end = bool(get_value(subscription, "cancel_at_period_end", row.cancel_at_period_end))
        row.updated_at = datetime.now(timezone.utc)
        db.commit()
        logger.info(f"Subscription {sub_id} marked {CANCELED_STATUS}")
        return PaymentConfirmation(success=True, transaction_id=event_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error canceling subscription {sub_id}: {e}", exc_info=True)
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error=f"DB error updating subscription {sub_id}: {e}", outcome=Outcome.INTERNAL_ERROR
        )
