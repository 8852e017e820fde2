"""Payment transaction ledger - lookups, creation and forward-only status transitions"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tokenpay.core.config import settings
from tokenpay.core.logging import ledger_logger
from tokenpay.models.payment_transaction import PaymentTransaction, PaymentStatus
from tokenpay.schemas.payments import PaymentConfirmation, Outcome

logger = logging.getLogger(__name__)

GATEWAY_ID = "stripe"
RELATED_ENTITY_TYPE = "payment_transactions"
LINK_ERROR_KEY = "subscription_link_error"

# target status -> statuses it may be reached from
ALLOWED_SOURCES = {
    PaymentStatus.COMPLETED: (PaymentStatus.PENDING,),
    PaymentStatus.FAILED: (PaymentStatus.PENDING,),
    PaymentStatus.EXPIRED: (PaymentStatus.PENDING,),
    PaymentStatus.TOKEN_AWARD_FAILED: (PaymentStatus.COMPLETED,),
}


def with_internal_prefix(transaction_id: str) -> str:
    return f"{settings.INTERNAL_PAYMENT_ID_PREFIX}{transaction_id}"


def strip_internal_prefix(value: Optional[str]) -> Optional[str]:
    """Turn the id found in gateway metadata back into a PaymentTransaction id"""
    if not value:
        return None
    value = str(value).strip()
    prefix = settings.INTERNAL_PAYMENT_ID_PREFIX
    if prefix and value.startswith(prefix):
        value = value[len(prefix):]
    return value or None


def get_transaction(db: Session, transaction_id: str) -> Optional[PaymentTransaction]:
    return db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).first()


def get_transaction_by_gateway_ref(db: Session, gateway_transaction_id: str,
                                   gateway_id: str = GATEWAY_ID) -> Optional[PaymentTransaction]:
    return db.query(PaymentTransaction).filter(
        PaymentTransaction.gateway_transaction_id == gateway_transaction_id,
        PaymentTransaction.payment_gateway_id == gateway_id
    ).first()


def build_transaction(
    user_id: Optional[str],
    target_wallet_id: str,
    tokens_to_award: int,
    status: str = PaymentStatus.PENDING,
    organization_id: Optional[str] = None,
    purchase_mode: Optional[str] = None,
    gateway_transaction_id: Optional[str] = None,
    amount_requested_fiat: Any = None,
    currency_requested_fiat: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> PaymentTransaction:
    """New, unsaved PaymentTransaction; callers add it inside their own unit of work"""
    return PaymentTransaction(
        user_id=user_id,
        organization_id=organization_id,
        target_wallet_id=target_wallet_id,
        payment_gateway_id=GATEWAY_ID,
        gateway_transaction_id=gateway_transaction_id,
        purchase_mode=purchase_mode,
        status=status,
        amount_requested_fiat=amount_requested_fiat,
        currency_requested_fiat=currency_requested_fiat,
        tokens_to_award=tokens_to_award or 0,
        metadata_json=metadata or {}
    )


def transition_status(db: Session, transaction_id: str, new_status: str,
                      gateway_transaction_id: Optional[str] = None) -> bool:
    """
    Move a transaction to ``new_status`` only along an allowed edge.

    Issued as a single conditional UPDATE so two concurrent deliveries cannot
    both perform the same transition. Commits the session.

    Returns:
        True if this call moved the row, False if it was already elsewhere
    """
    allowed_from = ALLOWED_SOURCES.get(new_status)
    if not allowed_from:
        raise ValueError(f"No transition leads to status {new_status}")

    values = {
        PaymentTransaction.status: new_status,
        PaymentTransaction.updated_at: datetime.now(timezone.utc)
    }
    if gateway_transaction_id:
        values[PaymentTransaction.gateway_transaction_id] = gateway_transaction_id

    moved = db.query(PaymentTransaction).filter(
        PaymentTransaction.id == transaction_id,
        PaymentTransaction.status.in_(allowed_from)
    ).update(values, synchronize_session=False)
    db.commit()

    if moved:
        ledger_logger.info(f"Payment transaction {transaction_id} -> {new_status}")
    else:
        logger.info(f"Payment transaction {transaction_id} not moved to {new_status} (not in {', '.join(allowed_from)})")
    return bool(moved)


def mark_failed_quietly(db: Session, transaction_id: Optional[str]):
    """Best-effort PENDING -> FAILED used from handler error paths"""
    if not transaction_id:
        return
    try:
        transition_status(db, transaction_id, PaymentStatus.FAILED)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to mark payment transaction {transaction_id} as FAILED: {e}")


def replay_result(ctx, transaction: PaymentTransaction, gateway_transaction_id: Optional[str] = None) -> PaymentConfirmation:
    """Result for a redelivery that finds the transaction already terminal.

    COMPLETED echoes the wallet grant actually recorded for the transaction,
    or repeats the stored subscription link failure when nothing was granted.
    Every other terminal status is acknowledged with zero tokens and the
    stored status surfaced in ``error``.
    """
    gateway_ref = gateway_transaction_id or transaction.gateway_transaction_id
    if transaction.status == PaymentStatus.COMPLETED:
        grant = ctx.wallets.find_grant(ctx.db, transaction.id, RELATED_ENTITY_TYPE)
        link_error = (transaction.metadata_json or {}).get(LINK_ERROR_KEY)
        if grant is None and link_error:
            logger.warning(f"Redelivery for payment transaction {transaction.id} whose subscription link failed: {link_error}")
            return PaymentConfirmation(
                success=False,
                transaction_id=transaction.id,
                payment_gateway_transaction_id=gateway_ref,
                tokens_awarded=0,
                error=link_error,
                outcome=Outcome.PARTIAL
            )
        logger.info(f"Payment transaction {transaction.id} already completed, nothing to do")
        return PaymentConfirmation(
            success=True,
            transaction_id=transaction.id,
            payment_gateway_transaction_id=gateway_ref,
            tokens_awarded=grant.amount if grant is not None else 0,
            message=f"Payment transaction {transaction.id} was already completed.",
            outcome=Outcome.REPLAYED
        )

    detail = f"Payment transaction {transaction.id} was previously marked as {transaction.status}."
    logger.warning(f"Redelivery for payment transaction {transaction.id} in status {transaction.status} acknowledged")
    return PaymentConfirmation(
        success=True,
        transaction_id=transaction.id,
        payment_gateway_transaction_id=gateway_ref,
        tokens_awarded=0,
        error=detail,
        message=detail,
        outcome=Outcome.REPLAYED
    )


def record_link_failure(db: Session, transaction: PaymentTransaction, error: str):
    """Keep a COMPLETED transaction's subscription link failure so redeliveries report it"""
    try:
        transaction.metadata_json = {**(transaction.metadata_json or {}), LINK_ERROR_KEY: error}
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not store link failure on payment transaction {transaction.id}: {e}")


def award_tokens(ctx, transaction: PaymentTransaction, notes: str,
                 gateway_transaction_id: Optional[str] = None) -> PaymentConfirmation:
    """
    Credit the transaction's tokens to its target wallet.

    Must only be called once the transaction is COMPLETED. The wallet grant is
    keyed by (transaction id, 'payment_transactions'), so calling this for a
    duplicate delivery returns the original grant instead of crediting twice.
    A failed grant moves the transaction to TOKEN_AWARD_FAILED.
    """
    db = ctx.db
    transaction_id = transaction.id
    tokens = transaction.tokens_to_award or 0
    gateway_ref = gateway_transaction_id or transaction.gateway_transaction_id

    if tokens <= 0:
        logger.info(f"No tokens to award for payment transaction {transaction_id}")
        return PaymentConfirmation(
            success=True,
            transaction_id=transaction_id,
            payment_gateway_transaction_id=gateway_ref,
            tokens_awarded=0
        )

    try:
        ctx.wallets.record_transaction(
            db,
            wallet_id=transaction.target_wallet_id,
            transaction_type="CREDIT_PURCHASE",
            amount=tokens,
            recorded_by_user_id=transaction.user_id,
            related_entity_id=transaction_id,
            related_entity_type=RELATED_ENTITY_TYPE,
            notes=notes
        )
    except Exception as e:
        db.rollback()
        logger.error(f"Token award failed for payment transaction {transaction_id}: {e}", exc_info=True)
        try:
            transition_status(db, transaction_id, PaymentStatus.TOKEN_AWARD_FAILED)
        except Exception as mark_error:
            db.rollback()
            logger.error(f"Could not mark payment transaction {transaction_id} as TOKEN_AWARD_FAILED: {mark_error}")
        return PaymentConfirmation(
            success=False,
            transaction_id=transaction_id,
            payment_gateway_transaction_id=gateway_ref,
            tokens_awarded=0,
            error=f"Failed to award tokens for payment transaction {transaction_id}: {e}",
            outcome=Outcome.PARTIAL
        )

    logger.info(f"✅ Awarded {tokens} tokens for payment transaction {transaction_id}")
    return PaymentConfirmation(
        success=True,
        transaction_id=transaction_id,
        payment_gateway_transaction_id=gateway_ref,
        tokens_awarded=tokens
    )
