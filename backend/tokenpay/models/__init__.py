"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from tokenpay.models.base import Base
from tokenpay.models.token_wallet import TokenWallet
from tokenpay.models.token_wallet_transaction import TokenWalletTransaction
from tokenpay.models.payment_transaction import PaymentTransaction, PaymentStatus
from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.models.user_subscription import UserSubscription
from tokenpay.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "TokenWallet", "TokenWalletTransaction", "PaymentTransaction",
    "PaymentStatus", "SubscriptionPlan", "UserSubscription", "StripeEvent"
]
