"""TokenWallet model"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tokenpay.models.base import Base


class TokenWallet(Base):
    """Token balance owned by a user or an organization"""
    __tablename__ = "token_wallets"

    wallet_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=True, index=True)
    organization_id = Column(String(255), nullable=True, index=True)
    balance = Column(Integer, default=0, nullable=False)
    currency = Column(String(20), default="AI_TOKEN", nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    transactions = relationship("TokenWalletTransaction", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_token_wallets_balance_non_negative'),
    )
