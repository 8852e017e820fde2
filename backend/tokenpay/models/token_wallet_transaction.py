"""TokenWalletTransaction model"""
import uuid
from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tokenpay.models.base import Base


class TokenWalletTransaction(Base):
    """Append-only wallet ledger entry.

    (related_entity_id, related_entity_type) is the idempotency key: the
    database refuses a second grant for the same source record.
    """
    __tablename__ = "token_wallet_transactions"

    transaction_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    wallet_id = Column(String(36), ForeignKey("token_wallets.wallet_id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_type = Column(String(50), nullable=False)  # 'CREDIT_PURCHASE', 'CREDIT_ADJUSTMENT', 'DEBIT_USAGE'
    amount = Column(Integer, nullable=False)
    balance_after_txn = Column(Integer, nullable=False)
    recorded_by_user_id = Column(String(255), nullable=True)
    related_entity_id = Column(String(255), nullable=True)
    related_entity_type = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Relationships
    wallet = relationship("TokenWallet", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('related_entity_id', 'related_entity_type', name='uq_token_wallet_txn_related_entity'),
        Index('ix_token_wallet_txn_wallet_created', 'wallet_id', 'created_at'),
    )
