"""Payment initiation - create the PENDING transaction and the Stripe checkout session"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from tokenpay.core.config import settings
from tokenpay.models.payment_transaction import PaymentStatus
from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.schemas.payments import PurchaseIntent, PaymentInitiationResult
from tokenpay.services.ledger_service import build_transaction, transition_status, with_internal_prefix
from tokenpay.services.stripe_service import HandlerContext, get_value

logger = logging.getLogger(__name__)

# plan_type -> (checkout session mode, purchase mode recorded on the transaction)
CHECKOUT_MODES = {
    "one_time_purchase": ("payment", "one_time"),
    "subscription": ("subscription", "subscription"),
}


def _failed(error: str, transaction_id: Optional[str] = None) -> PaymentInitiationResult:
    logger.error(error)
    return PaymentInitiationResult(success=False, transaction_id=transaction_id, error=error)


def find_plan_for_item(db, item_id: str) -> Optional[SubscriptionPlan]:
    """Active plan by Stripe price id, falling back to the internal item id"""
    return (
        db.query(SubscriptionPlan)
        .filter(
            SubscriptionPlan.active.is_(True),
            or_(SubscriptionPlan.stripe_price_id == item_id, SubscriptionPlan.item_id_internal == item_id)
        )
        .order_by((SubscriptionPlan.stripe_price_id == item_id).desc())
        .first()
    )


def initiate_payment(ctx: HandlerContext, intent: PurchaseIntent) -> PaymentInitiationResult:
    """
    Start a purchase for ``intent``.

    Every configuration problem (unknown plan, missing plan type, tokens,
    amount or currency, currency mismatch, missing wallet) is reported before
    any Stripe call. The PENDING transaction is written first so its id can be
    embedded in the checkout metadata; if Stripe then fails it is marked FAILED.

    Returns:
        PaymentInitiationResult with the redirect URL and, for payment-mode
        sessions, the payment intent client secret
    """
    db = ctx.db
    item_id = intent.item_id

    plan = find_plan_for_item(db, item_id)
    if plan is None:
        return _failed(f"Plan data not found for item {item_id}.")
    if not plan.stripe_price_id:
        return _failed(f"Stripe Price ID configuration missing for item {item_id}.")

    modes = CHECKOUT_MODES.get(plan.plan_type)
    if modes is None:
        return _failed(
            f"Invalid or missing plan_type: '{plan.plan_type}' received for item ID: {item_id}. "
            f"Cannot determine Stripe session mode."
        )
    stripe_mode, purchase_mode = modes

    if plan.tokens_to_award is None or plan.tokens_to_award < 0:
        return _failed(f"Plan for item {item_id} has no valid tokens_to_award configured.")
    if plan.amount is None or not plan.currency:
        return _failed(f"Plan for item {item_id} has no amount or currency configured.")

    plan_currency = plan.currency.lower()
    requested_currency = (intent.currency or plan_currency).lower()
    if requested_currency != plan_currency:
        return _failed(
            f"Currency mismatch for item {item_id}: requested {requested_currency}, plan is priced in {plan_currency}."
        )

    if intent.wallet_id:
        wallet = ctx.wallets.get_wallet(db, intent.wallet_id)
    else:
        wallet = ctx.wallets.get_wallet_for_context(db, user_id=intent.user_id, organization_id=intent.organization_id)
    if wallet is None:
        return _failed(f"Token wallet not found for user {intent.user_id} (organization {intent.organization_id}).")
    owns_wallet = (
        (intent.organization_id and wallet.organization_id == intent.organization_id)
        or (not wallet.organization_id and wallet.user_id == intent.user_id)
    )
    if not owns_wallet:
        return _failed(f"Wallet {wallet.wallet_id} does not belong to the purchasing user or organization.")

    quantity = intent.quantity
    tokens_to_award = plan.tokens_to_award * quantity
    try:
        transaction = build_transaction(
            user_id=intent.user_id,
            organization_id=intent.organization_id,
            target_wallet_id=wallet.wallet_id,
            tokens_to_award=tokens_to_award,
            purchase_mode=purchase_mode,
            amount_requested_fiat=Decimal(plan.amount * quantity) / Decimal(100),
            currency_requested_fiat=plan_currency,
            metadata={
                **intent.metadata,
                "itemId": plan.item_id_internal or item_id,
                "quantity": quantity,
                "requestedCurrency": requested_currency,
            }
        )
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
    except SQLAlchemyError as e:
        db.rollback()
        return _failed(f"Failed to create payment transaction for item {item_id}: {e}")

    transaction_id = transaction.id
    gateway_metadata = {
        "internal_payment_id": with_internal_prefix(transaction_id),
        "user_id": intent.user_id,
        "organization_id": intent.organization_id or "",
        "item_id": plan.item_id_internal or item_id,
        "tokens_to_award": str(tokens_to_award),
    }
    checkout_params = {
        "line_items": [{"price": plan.stripe_price_id, "quantity": quantity}],
        "mode": stripe_mode,
        "success_url": (
            f"{settings.FRONTEND_URL}/subscription/success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&payment_id={transaction_id}"
        ),
        "cancel_url": f"{settings.FRONTEND_URL}/subscription",
        "client_reference_id": intent.user_id,
        "metadata": gateway_metadata,
    }
    if stripe_mode == "subscription":
        checkout_params["subscription_data"] = {"metadata": gateway_metadata}
    else:
        checkout_params["payment_intent_data"] = {"metadata": gateway_metadata}

    try:
        session = ctx.gateway.checkout.Session.create(**checkout_params)
        client_secret = None
        payment_intent = get_value(session, "payment_intent")
        if isinstance(payment_intent, str):
            client_secret = get_value(ctx.gateway.PaymentIntent.retrieve(payment_intent), "client_secret")
        elif payment_intent:
            client_secret = get_value(payment_intent, "client_secret")
    except Exception as e:
        logger.error(f"Stripe checkout session creation failed for payment transaction {transaction_id}: {e}")
        try:
            transition_status(db, transaction_id, PaymentStatus.FAILED)
        except SQLAlchemyError as mark_error:
            db.rollback()
            logger.error(f"Could not mark payment transaction {transaction_id} as FAILED: {mark_error}")
        return PaymentInitiationResult(
            success=False,
            transaction_id=transaction_id,
            error=f"Failed to create Stripe checkout session: {e}"
        )

    session_id = get_value(session, "id")
    try:
        metadata = dict(transaction.metadata_json or {})
        metadata["stripe_checkout_session_id"] = session_id
        transaction.metadata_json = metadata
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not store checkout session {session_id} on payment transaction {transaction_id}: {e}")

    logger.info(f"✅ Checkout session {session_id} created for payment transaction {transaction_id} ({stripe_mode})")
    return PaymentInitiationResult(
        success=True,
        transaction_id=transaction_id,
        payment_gateway_transaction_id=session_id,
        redirect_url=get_value(session, "url"),
        client_secret=client_secret
    )
