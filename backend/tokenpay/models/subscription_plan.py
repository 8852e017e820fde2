"""SubscriptionPlan model"""
import uuid
from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime
from datetime import datetime, timezone
from tokenpay.models.base import Base


class SubscriptionPlan(Base):
    """Local mirror of a Stripe price (one row per price id)"""
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_price_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_product_id = Column(String(255), nullable=True, index=True)
    item_id_internal = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(JSON, nullable=True)  # {"subtitle": str, "features": [str]}
    amount = Column(Integer, nullable=True)  # smallest currency unit
    currency = Column(String(10), nullable=True)
    interval = Column(String(20), nullable=True)
    interval_count = Column(Integer, nullable=True)
    plan_type = Column(String(30), nullable=False)  # 'subscription' or 'one_time_purchase'
    active = Column(Boolean, default=True, nullable=False)
    tokens_to_award = Column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    plan_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
