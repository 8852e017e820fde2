"""Checkout session webhook handlers"""
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from tokenpay.models.payment_transaction import PaymentTransaction, PaymentStatus
from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.schemas.payments import PaymentConfirmation, Outcome
from tokenpay.services.ledger_service import (
    get_transaction, strip_internal_prefix, transition_status, mark_failed_quietly,
    replay_result, award_tokens, record_link_failure
)
from tokenpay.services.stripe_service import HandlerContext, get_value, get_id
from tokenpay.services.subscription_service import upsert_user_subscription

logger = logging.getLogger(__name__)

SUBSCRIPTION_MODE = "subscription"


def _session_from_event(event: Any):
    return get_value(get_value(event, "data"), "object", {})


def _item_id_for(transaction: PaymentTransaction, session: Any) -> Optional[str]:
    metadata = transaction.metadata_json or {}
    item_id = metadata.get("itemId") or metadata.get("item_id")
    if not item_id:
        item_id = get_value(get_value(session, "metadata", {}), "item_id")
    return str(item_id) if item_id else None


def _failure(transaction_id: Optional[str], gateway_ref: Optional[str], error: str,
             outcome: Outcome) -> PaymentConfirmation:
    return PaymentConfirmation(
        success=False,
        transaction_id=transaction_id,
        payment_gateway_transaction_id=gateway_ref,
        tokens_awarded=0,
        error=error,
        outcome=outcome
    )


def _link_subscription(ctx: HandlerContext, session: Any, transaction: PaymentTransaction) -> Optional[PaymentConfirmation]:
    """
    Create or refresh the UserSubscription for a subscription-mode checkout.

    Returns None on success, otherwise the failure to report. A PARTIAL
    outcome means only the final upsert failed; any other outcome means the
    payment should be marked FAILED.
    """
    db = ctx.db
    transaction_id = transaction.id
    gateway_ref = get_value(session, "id")
    stripe_subscription_id = get_id(get_value(session, "subscription"))
    stripe_customer_id = get_id(get_value(session, "customer"))

    if not stripe_subscription_id:
        logger.error(f"Stripe subscription ID missing on checkout session {gateway_ref}")
        return _failure(transaction_id, gateway_ref, "Stripe Subscription ID missing or invalid.", Outcome.VALIDATION_ERROR)
    if not stripe_customer_id:
        logger.error(f"Stripe customer ID missing on checkout session {gateway_ref}")
        return _failure(transaction_id, gateway_ref, "Stripe Customer ID missing or invalid.", Outcome.VALIDATION_ERROR)
    if not transaction.user_id:
        logger.error(f"Payment transaction {transaction_id} has no user_id")
        return _failure(transaction_id, gateway_ref, "User ID for subscription missing in payment transaction.", Outcome.VALIDATION_ERROR)

    item_id = _item_id_for(transaction, session)
    if not item_id:
        logger.error(f"Internal item id not found for payment transaction {transaction_id}")
        return _failure(transaction_id, gateway_ref, "Internal item ID for subscription plan lookup missing.", Outcome.VALIDATION_ERROR)

    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.item_id_internal == item_id).first()
    if plan is None:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == item_id).first()
    if plan is None:
        logger.error(f"Could not find internal subscription plan for item_id {item_id}")
        return _failure(transaction_id, gateway_ref,
                        f"Could not find internal subscription plan ID for item_id: {item_id}", Outcome.NOT_FOUND)
    plan_id = plan.id

    try:
        subscription = ctx.gateway.Subscription.retrieve(stripe_subscription_id)
    except Exception as e:
        logger.error(f"Could not retrieve subscription {stripe_subscription_id} from Stripe: {e}")
        return _failure(transaction_id, gateway_ref,
                        f"Failed to retrieve Stripe subscription {stripe_subscription_id}: {e}", Outcome.DOWNSTREAM_ERROR)
    if not subscription:
        return _failure(transaction_id, gateway_ref,
                        f"Failed to retrieve Stripe subscription {stripe_subscription_id}: empty response",
                        Outcome.DOWNSTREAM_ERROR)

    try:
        upsert_user_subscription(
            db,
            user_id=transaction.user_id,
            organization_id=transaction.organization_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            subscription=subscription,
            plan_id=plan_id
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to upsert user_subscription for {stripe_subscription_id}: {e}", exc_info=True)
        return _failure(transaction_id, gateway_ref,
                        f"Failed to upsert user_subscription for {stripe_subscription_id}: {e}", Outcome.PARTIAL)
    return None


def handle_checkout_session_completed(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """
    Confirm a PENDING payment transaction and credit its tokens.

    Redeliveries are resolved by the transaction status: a COMPLETED
    transaction echoes its award, any other terminal status is acknowledged
    with zero tokens. The wallet grant itself is idempotent, so two
    deliveries racing past the status check still credit exactly once.
    """
    session = _session_from_event(event)
    gateway_ref = get_value(session, "id")
    metadata = get_value(session, "metadata", {})
    internal_payment_id = strip_internal_prefix(get_value(metadata, "internal_payment_id"))

    logger.info(f"Processing checkout session {gateway_ref}, internal payment id: {internal_payment_id}")

    if not internal_payment_id:
        logger.error(f"internal_payment_id missing from metadata of checkout session {gateway_ref}")
        return PaymentConfirmation(
            success=False,
            payment_gateway_transaction_id=gateway_ref,
            error="Internal payment ID missing from webhook metadata.",
            outcome=Outcome.VALIDATION_ERROR
        )

    db = ctx.db
    try:
        transaction = get_transaction(db, internal_payment_id)
        if transaction is None:
            logger.error(f"Payment transaction {internal_payment_id} not found")
            return PaymentConfirmation(
                success=False,
                transaction_id=internal_payment_id,
                payment_gateway_transaction_id=gateway_ref,
                error=f"Payment transaction {internal_payment_id} not found.",
                outcome=Outcome.NOT_FOUND
            )

        if transaction.status in PaymentStatus.TERMINAL:
            return replay_result(ctx, transaction, gateway_ref)

        mode = get_value(session, "mode") or transaction.purchase_mode
        link_failure = None
        if mode == SUBSCRIPTION_MODE or transaction.purchase_mode == SUBSCRIPTION_MODE:
            link_failure = _link_subscription(ctx, session, transaction)
            if link_failure is not None and link_failure.outcome != Outcome.PARTIAL:
                mark_failed_quietly(db, internal_payment_id)
                return link_failure

        if not transition_status(db, internal_payment_id, PaymentStatus.COMPLETED, gateway_transaction_id=gateway_ref):
            # Another delivery moved it first
            db.refresh(transaction)
            if transaction.status != PaymentStatus.COMPLETED:
                return replay_result(ctx, transaction, gateway_ref)
            logger.info(f"Payment transaction {internal_payment_id} completed concurrently; continuing to idempotent award")

        if link_failure is not None:
            # Payment succeeded but the subscription link did not; tokens stay unawarded
            record_link_failure(db, transaction, link_failure.error)
            return link_failure

        return award_tokens(
            ctx,
            transaction,
            notes=f"Tokens for Stripe Checkout Session {gateway_ref} (mode: {mode})",
            gateway_transaction_id=gateway_ref
        )

    except Exception as e:
        db.rollback()
        logger.error(f"Unexpected error processing checkout session {gateway_ref} for {internal_payment_id}: {e}", exc_info=True)
        mark_failed_quietly(db, internal_payment_id)
        return PaymentConfirmation(
            success=False,
            transaction_id=internal_payment_id,
            payment_gateway_transaction_id=gateway_ref,
            error=str(e),
            outcome=Outcome.INTERNAL_ERROR
        )


def handle_checkout_session_expired(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    session = _session_from_event(event)
    gateway_ref = get_value(session, "id")
    internal_payment_id = strip_internal_prefix(get_value(get_value(session, "metadata", {}), "internal_payment_id"))

    if not internal_payment_id:
        logger.warning(f"Expired checkout session {gateway_ref} carries no internal payment id")
        return PaymentConfirmation(
            success=False,
            payment_gateway_transaction_id=gateway_ref,
            error="Internal payment ID missing from webhook metadata.",
            outcome=Outcome.VALIDATION_ERROR
        )

    db = ctx.db
    try:
        transaction = get_transaction(db, internal_payment_id)
        if transaction is None:
            logger.warning(f"Payment transaction {internal_payment_id} for expired session {gateway_ref} not found")
            return PaymentConfirmation(
                success=False,
                transaction_id=internal_payment_id,
                payment_gateway_transaction_id=gateway_ref,
                error=f"Payment transaction {internal_payment_id} not found.",
                outcome=Outcome.NOT_FOUND
            )

        if not transition_status(db, internal_payment_id, PaymentStatus.EXPIRED):
            db.refresh(transaction)
            logger.info(f"Checkout session {gateway_ref} expired but transaction is {transaction.status}; left as is")
            return PaymentConfirmation(
                success=True,
                transaction_id=internal_payment_id,
                payment_gateway_transaction_id=gateway_ref,
                tokens_awarded=0,
                message=f"Payment transaction {internal_payment_id} is already {transaction.status}; expiry ignored.",
                outcome=Outcome.REPLAYED
            )

        logger.info(f"Payment transaction {internal_payment_id} expired with checkout session {gateway_ref}")
        return PaymentConfirmation(
            success=True,
            transaction_id=internal_payment_id,
            payment_gateway_transaction_id=gateway_ref,
            tokens_awarded=0
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error expiring payment transaction {internal_payment_id}: {e}", exc_info=True)
        return PaymentConfirmation(
            success=False,
            transaction_id=internal_payment_id,
            payment_gateway_transaction_id=gateway_ref,
            error=str(e),
            outcome=Outcome.INTERNAL_ERROR
        )
