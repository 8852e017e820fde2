"""Invoice webhook handlers for recurring billing"""
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tokenpay.models.payment_transaction import PaymentTransaction, PaymentStatus
from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.schemas.payments import PaymentConfirmation, Outcome
from tokenpay.services.ledger_service import (
    get_transaction_by_gateway_ref, build_transaction, transition_status, replay_result, award_tokens
)
from tokenpay.services.stripe_service import HandlerContext, get_value, get_id, first_item
from tokenpay.services.subscription_service import find_subscription_owner, refresh_subscription_from_gateway

logger = logging.getLogger(__name__)

# The first invoice of a subscription is paid through checkout, which credits it
INITIAL_BILLING_REASON = "subscription_create"


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub_id = get_id(get_value(invoice, "subscription"))
    if not sub_id:
        # 2025+ API versions nest it under parent.subscription_details
        details = get_value(get_value(invoice, "parent"), "subscription_details")
        sub_id = get_id(get_value(details, "subscription"))
    return sub_id


def _invoice_price_id(invoice: Any) -> Optional[str]:
    line = first_item(get_value(invoice, "lines"))
    price_id = get_id(get_value(line, "price"))
    if not price_id:
        price_details = get_value(get_value(line, "pricing"), "price_details")
        price_id = get_id(get_value(price_details, "price"))
    return price_id


def _to_major_units(amount: Any) -> Optional[Decimal]:
    if amount is None:
        return None
    return Decimal(int(amount)) / Decimal(100)


def _insert_invoice_transaction(db, transaction: PaymentTransaction, invoice_id: str) -> PaymentTransaction:
    """Insert a transaction keyed by invoice id, or return the row a concurrent delivery inserted"""
    try:
        with db.begin_nested():
            db.add(transaction)
            db.flush()
        db.commit()
        return transaction
    except IntegrityError:
        existing = get_transaction_by_gateway_ref(db, invoice_id)
        if existing is None:
            raise
        logger.info(f"Invoice {invoice_id} was recorded concurrently as payment transaction {existing.id}")
        return existing


def handle_invoice_payment_succeeded(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """
    Record a renewal payment and credit the plan's tokens.

    The invoice id is the idempotency key for the PaymentTransaction and the
    new transaction's id keys the wallet grant, so redeliveries never credit
    twice. A PENDING row left by an interrupted delivery is resumed.
    """
    event_id = get_value(event, "id")
    invoice = get_value(get_value(event, "data"), "object", {})
    invoice_id = get_value(invoice, "id")
    customer_id = get_id(get_value(invoice, "customer"))
    subscription_id = _invoice_subscription_id(invoice)

    logger.info(f"Processing paid invoice {invoice_id}, event {event_id}")

    if not invoice_id:
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error="Invoice ID missing from event.", outcome=Outcome.VALIDATION_ERROR
        )
    if not customer_id:
        logger.warning(f"Invoice {invoice_id} has no customer; skipping")
        return PaymentConfirmation(
            success=True, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
            message=f"Invoice {invoice_id} has no customer.", outcome=Outcome.IGNORED
        )

    db = ctx.db
    try:
        transaction = get_transaction_by_gateway_ref(db, invoice_id)
        if transaction is not None and transaction.status in PaymentStatus.TERMINAL:
            return replay_result(ctx, transaction, invoice_id)

        if transaction is None:
            if get_value(invoice, "billing_reason") == INITIAL_BILLING_REASON:
                logger.info(f"Invoice {invoice_id} opens subscription {subscription_id}; tokens come from checkout")
                return PaymentConfirmation(
                    success=True, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                    tokens_awarded=0,
                    message=f"Initial invoice {invoice_id} is credited by checkout completion.",
                    outcome=Outcome.IGNORED
                )

            owner = find_subscription_owner(db, subscription_id, customer_id)
            if owner is None:
                logger.error(f"Could not find user for Stripe customer {customer_id} (invoice {invoice_id})")
                return PaymentConfirmation(
                    success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                    error=f"User not found for customer {customer_id}", outcome=Outcome.NOT_FOUND
                )

            wallet = ctx.wallets.get_wallet_for_context(db, user_id=owner.user_id, organization_id=owner.organization_id)
            if wallet is None:
                logger.error(f"Token wallet not found for user {owner.user_id} (invoice {invoice_id})")
                return PaymentConfirmation(
                    success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                    error=f"Wallet not found for user {owner.user_id}", outcome=Outcome.NOT_FOUND
                )

            price_id = _invoice_price_id(invoice)
            plan = None
            if price_id:
                plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
            if plan is None and owner.plan_id:
                plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.id == owner.plan_id).first()
            if plan is None:
                reason = f"Subscription plan details not found for price ID {price_id}."
                logger.error(f"Could not find plan for price {price_id} on invoice {invoice_id}; renewal recorded as FAILED")
                _insert_invoice_transaction(db, build_transaction(
                    user_id=owner.user_id,
                    organization_id=owner.organization_id,
                    target_wallet_id=wallet.wallet_id,
                    gateway_transaction_id=invoice_id,
                    purchase_mode="subscription",
                    status=PaymentStatus.FAILED,
                    amount_requested_fiat=_to_major_units(get_value(invoice, "amount_paid")),
                    currency_requested_fiat=get_value(invoice, "currency"),
                    tokens_to_award=0,
                    metadata={
                        "stripe_event_id": event_id,
                        "type": "RENEWAL_PLAN_NOT_FOUND",
                        "reason": reason,
                        "stripe_subscription_id": subscription_id,
                    }
                ), invoice_id)
                return PaymentConfirmation(
                    success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                    error=reason, outcome=Outcome.NOT_FOUND
                )
            tokens_to_award = plan.tokens_to_award or 0

            transaction = _insert_invoice_transaction(db, build_transaction(
                user_id=owner.user_id,
                organization_id=owner.organization_id,
                target_wallet_id=wallet.wallet_id,
                gateway_transaction_id=invoice_id,
                purchase_mode="subscription",
                status=PaymentStatus.PENDING,
                amount_requested_fiat=_to_major_units(get_value(invoice, "amount_paid")),
                currency_requested_fiat=get_value(invoice, "currency"),
                tokens_to_award=tokens_to_award,
                metadata={
                    "stripe_event_id": event_id,
                    "type": "RENEWAL",
                    "stripe_subscription_id": subscription_id,
                    "item_id_internal": plan.item_id_internal,
                    "billing_reason": get_value(invoice, "billing_reason"),
                }
            ), invoice_id)
            if transaction.status in PaymentStatus.TERMINAL:
                return replay_result(ctx, transaction, invoice_id)

        if subscription_id:
            refresh_subscription_from_gateway(ctx, subscription_id)

        if not transition_status(db, transaction.id, PaymentStatus.COMPLETED):
            db.refresh(transaction)
            if transaction.status != PaymentStatus.COMPLETED:
                return replay_result(ctx, transaction, invoice_id)

        return award_tokens(
            ctx,
            transaction,
            notes=f"Tokens for Stripe Invoice {invoice_id} (Renewal)",
            gateway_transaction_id=invoice_id
        )

    except Exception as e:
        # A PENDING renewal row is resumed by the redelivery this failure triggers
        db.rollback()
        logger.error(f"Error processing paid invoice {invoice_id}, event {event_id}: {e}", exc_info=True)
        return PaymentConfirmation(
            success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
            error=str(e), outcome=Outcome.INTERNAL_ERROR
        )


def handle_invoice_payment_failed(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Record a FAILED transaction for the invoice. The subscription row is left to the subscription events."""
    event_id = get_value(event, "id")
    invoice = get_value(get_value(event, "data"), "object", {})
    invoice_id = get_value(invoice, "id")
    customer_id = get_id(get_value(invoice, "customer"))
    subscription_id = _invoice_subscription_id(invoice)

    logger.warning(f"Payment failed for invoice {invoice_id}, event {event_id}")

    if not invoice_id:
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error="Invoice ID missing from event.", outcome=Outcome.VALIDATION_ERROR
        )
    if not customer_id:
        return PaymentConfirmation(
            success=True, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
            message=f"Invoice {invoice_id} has no customer.", outcome=Outcome.IGNORED
        )

    db = ctx.db
    try:
        transaction = get_transaction_by_gateway_ref(db, invoice_id)
        if transaction is not None:
            if transaction.status == PaymentStatus.PENDING and transition_status(db, transaction.id, PaymentStatus.FAILED):
                return PaymentConfirmation(
                    success=True, transaction_id=transaction.id,
                    payment_gateway_transaction_id=invoice_id, tokens_awarded=0
                )
            db.refresh(transaction)
            if transaction.status != PaymentStatus.FAILED:
                logger.warning(
                    f"Invoice {invoice_id} (payment {transaction.id}) is {transaction.status} but a "
                    f"payment_failed event arrived; review needed"
                )
            return PaymentConfirmation(
                success=True, transaction_id=transaction.id,
                payment_gateway_transaction_id=invoice_id, tokens_awarded=0,
                message=f"Invoice {invoice_id} already recorded as {transaction.status}.",
                outcome=Outcome.REPLAYED
            )

        owner = find_subscription_owner(db, subscription_id, customer_id)
        if owner is None:
            logger.error(f"User not found for failed invoice {invoice_id} (customer {customer_id})")
            return PaymentConfirmation(
                success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                error=f"User not found for failed invoice {invoice_id}.", outcome=Outcome.NOT_FOUND
            )
        wallet = ctx.wallets.get_wallet_for_context(db, user_id=owner.user_id, organization_id=owner.organization_id)
        if wallet is None:
            logger.error(f"Wallet not found for user {owner.user_id}; cannot log failed invoice {invoice_id}")
            return PaymentConfirmation(
                success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
                error=f"Wallet not found for user {owner.user_id} to log failed payment.", outcome=Outcome.NOT_FOUND
            )

        transaction = _insert_invoice_transaction(db, build_transaction(
            user_id=owner.user_id,
            organization_id=owner.organization_id,
            target_wallet_id=wallet.wallet_id,
            gateway_transaction_id=invoice_id,
            purchase_mode="subscription",
            status=PaymentStatus.FAILED,
            amount_requested_fiat=_to_major_units(get_value(invoice, "amount_due")),
            currency_requested_fiat=get_value(invoice, "currency"),
            tokens_to_award=0,
            metadata={
                "stripe_event_id": event_id,
                "type": "RENEWAL_FAILED",
                "stripe_subscription_id": subscription_id,
                "billing_reason": get_value(invoice, "billing_reason"),
                "attempt_count": get_value(invoice, "attempt_count"),
            }
        ), invoice_id)

        logger.info(f"Failed invoice {invoice_id} recorded as payment transaction {transaction.id}")
        return PaymentConfirmation(
            success=True, transaction_id=transaction.id,
            payment_gateway_transaction_id=invoice_id, tokens_awarded=0
        )

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error recording failed invoice {invoice_id}: {e}", exc_info=True)
        return PaymentConfirmation(
            success=False, transaction_id=event_id, payment_gateway_transaction_id=invoice_id,
            error=f"DB error recording failed payment: {e}", outcome=Outcome.INTERNAL_ERROR
        )
