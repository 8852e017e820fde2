"""PaymentTransaction model"""
import uuid
from sqlalchemy import Column, Integer, Numeric, String, ForeignKey, JSON, DateTime, Index, UniqueConstraint
from datetime import datetime, timezone
from tokenpay.models.base import Base


class PaymentStatus:
    """Lifecycle values for PaymentTransaction.status"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    TOKEN_AWARD_FAILED = "TOKEN_AWARD_FAILED"

    TERMINAL = frozenset({COMPLETED, FAILED, EXPIRED, TOKEN_AWARD_FAILED})


class PaymentTransaction(Base):
    """One row per purchase attempt (checkout session or subscription invoice)"""
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=True, index=True)
    organization_id = Column(String(255), nullable=True)
    target_wallet_id = Column(String(36), ForeignKey("token_wallets.wallet_id"), nullable=False, index=True)
    payment_gateway_id = Column(String(50), default="stripe", nullable=False)
    gateway_transaction_id = Column(String(255), nullable=True)
    purchase_mode = Column(String(30), nullable=True)  # 'one_time' or 'subscription'
    status = Column(String(30), default=PaymentStatus.PENDING, nullable=False, index=True)
    amount_requested_fiat = Column(Numeric(12, 2), nullable=True)
    currency_requested_fiat = Column(String(10), nullable=True)
    tokens_to_award = Column(Integer, default=0, nullable=False)
    metadata_json = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('gateway_transaction_id', 'payment_gateway_id', name='uq_payment_txn_gateway_ref'),
        Index('ix_payment_transactions_user_created', 'user_id', 'created_at'),
    )
