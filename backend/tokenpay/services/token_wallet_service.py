"""Token wallet service - append-only credit ledger"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timezone
from typing import Optional, List
import logging

from tokenpay.core.logging import ledger_logger
from tokenpay.core.metrics import tokens_awarded_counter
from tokenpay.models.token_wallet import TokenWallet
from tokenpay.models.token_wallet_transaction import TokenWalletTransaction

logger = logging.getLogger(__name__)

CREDIT_TYPES = {"CREDIT_PURCHASE", "CREDIT_ADJUSTMENT", "CREDIT_REFERRAL"}
DEBIT_TYPES = {"DEBIT_USAGE", "DEBIT_ADJUSTMENT"}


class WalletError(Exception):
    """Raised when a wallet ledger write is rejected"""


def get_wallet(db: Session, wallet_id: str) -> Optional[TokenWallet]:
    return db.query(TokenWallet).filter(TokenWallet.wallet_id == wallet_id).first()


def get_wallet_for_context(db: Session, user_id: Optional[str] = None,
                           organization_id: Optional[str] = None) -> Optional[TokenWallet]:
    """Organization wallet when an organization is given, otherwise the user's personal wallet"""
    if organization_id:
        return db.query(TokenWallet).filter(TokenWallet.organization_id == organization_id).first()
    if user_id:
        return (
            db.query(TokenWallet)
            .filter(TokenWallet.user_id == user_id, TokenWallet.organization_id.is_(None))
            .first()
        )
    return None


def create_wallet(db: Session, user_id: Optional[str] = None, organization_id: Optional[str] = None,
                  currency: str = "AI_TOKEN") -> TokenWallet:
    if not user_id and not organization_id:
        raise WalletError("A wallet needs a user or an organization owner")
    wallet = TokenWallet(user_id=user_id, organization_id=organization_id, balance=0, currency=currency)
    db.add(wallet)
    db.commit()
    db.refresh(wallet)
    logger.info(f"Created token wallet {wallet.wallet_id} (user={user_id}, organization={organization_id})")
    return wallet


def get_balance(db: Session, wallet_id: str) -> int:
    balance = db.query(TokenWallet.balance).filter(TokenWallet.wallet_id == wallet_id).scalar()
    if balance is None:
        raise WalletError(f"Wallet {wallet_id} not found")
    return balance


def find_grant(db: Session, related_entity_id: str, related_entity_type: str) -> Optional[TokenWalletTransaction]:
    return db.query(TokenWalletTransaction).filter(
        TokenWalletTransaction.related_entity_id == related_entity_id,
        TokenWalletTransaction.related_entity_type == related_entity_type
    ).first()


def record_transaction(
    db: Session,
    wallet_id: str,
    transaction_type: str,
    amount: int,
    recorded_by_user_id: Optional[str] = None,
    related_entity_id: Optional[str] = None,
    related_entity_type: Optional[str] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None
) -> TokenWalletTransaction:
    """
    Append a ledger entry and move the wallet balance.

    When ``related_entity_id``/``related_entity_type`` are given they form the
    idempotency key: a second call for the same pair (even a concurrent one)
    returns the existing entry and leaves the balance untouched.

    Args:
        db: Database session
        wallet_id: Target wallet
        transaction_type: One of CREDIT_TYPES or DEBIT_TYPES
        amount: Positive number of tokens
        recorded_by_user_id: Actor responsible for the entry
        related_entity_id: Source record id (e.g. a payment transaction id)
        related_entity_type: Source table name (e.g. 'payment_transactions')
        notes: Free-form description
        idempotency_key: Optional caller supplied key stored for audit

    Returns:
        The new (or previously recorded) TokenWalletTransaction

    Raises:
        WalletError: unknown wallet, invalid amount/type or insufficient balance
    """
    if transaction_type in CREDIT_TYPES:
        delta = amount
    elif transaction_type in DEBIT_TYPES:
        delta = -amount
    else:
        raise WalletError(f"Unsupported wallet transaction type: {transaction_type}")

    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise WalletError(f"Transaction amount must be a positive integer, got {amount!r}")

    if related_entity_id and related_entity_type:
        existing = find_grant(db, related_entity_id, related_entity_type)
        if existing:
            logger.info(
                f"Wallet transaction for {related_entity_type}/{related_entity_id} already recorded "
                f"({existing.transaction_id}), skipping"
            )
            return existing

    if get_wallet(db, wallet_id) is None:
        raise WalletError(f"Wallet {wallet_id} not found")

    try:
        with db.begin_nested():
            # Conditional update keeps the balance non-negative without a row lock
            updated = db.query(TokenWallet).filter(
                TokenWallet.wallet_id == wallet_id,
                TokenWallet.balance + delta >= 0
            ).update(
                {
                    TokenWallet.balance: TokenWallet.balance + delta,
                    TokenWallet.updated_at: datetime.now(timezone.utc)
                },
                synchronize_session=False
            )
            if updated == 0:
                raise WalletError(f"Insufficient balance in wallet {wallet_id} for {transaction_type} of {amount}")

            balance_after = db.query(TokenWallet.balance).filter(TokenWallet.wallet_id == wallet_id).scalar()
            transaction = TokenWalletTransaction(
                wallet_id=wallet_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after_txn=balance_after,
                recorded_by_user_id=recorded_by_user_id,
                related_entity_id=related_entity_id,
                related_entity_type=related_entity_type,
                notes=notes,
                idempotency_key=idempotency_key
            )
            db.add(transaction)
            db.flush()
        db.commit()
    except IntegrityError:
        # Concurrent duplicate grant; the savepoint undid our balance change
        if related_entity_id and related_entity_type:
            existing = find_grant(db, related_entity_id, related_entity_type)
            if existing:
                logger.info(
                    f"Concurrent wallet transaction for {related_entity_type}/{related_entity_id} "
                    f"won the race ({existing.transaction_id}), returning it"
                )
                return existing
        raise

    if transaction_type in CREDIT_TYPES:
        tokens_awarded_counter.inc(amount)
    ledger_logger.info(
        f"✅ Wallet {wallet_id}: {transaction_type} {amount} tokens, balance now {balance_after}"
    )
    return transaction


def get_transaction_history(db: Session, wallet_id: str, limit: int = 50, offset: int = 0) -> List[TokenWalletTransaction]:
    return (
        db.query(TokenWalletTransaction)
        .filter(TokenWalletTransaction.wallet_id == wallet_id)
        .order_by(TokenWalletTransaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
