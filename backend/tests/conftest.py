"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from tokenpay.main import app
from tokenpay.core.config import settings
from tokenpay.db.session import get_db
from tokenpay.models import Base, TokenWallet, PaymentTransaction, PaymentStatus, SubscriptionPlan, UserSubscription
from tokenpay.services.stripe_service import HandlerContext


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """Session factory over a file database so several sessions use separate connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client bound to the test database"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Tables come from the db_session fixture, not the application engine
        with patch('tokenpay.main.init_db'):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def gateway() -> Mock:
    """Stand-in for the stripe module as seen by the handlers"""
    return Mock()


@pytest.fixture(scope="function")
def ctx(db_session: Session, gateway: Mock) -> HandlerContext:
    return HandlerContext(db=db_session, gateway=gateway)


@pytest.fixture(scope="function")
def wallet(db_session: Session) -> TokenWallet:
    return make_wallet(db_session, user_id="user_1")


# ============================================================================
# BUILDERS
# ============================================================================

def make_wallet(db: Session, user_id: str = "user_1", organization_id: str = None, balance: int = 0) -> TokenWallet:
    wallet = TokenWallet(user_id=user_id, organization_id=organization_id, balance=balance)
    db.add(wallet)
    db.commit()
    db.refresh(wallet)
    return wallet


def make_plan(db: Session, price_id: str = "price_pro", **overrides) -> SubscriptionPlan:
    values = dict(
        stripe_price_id=price_id,
        stripe_product_id="prod_pro",
        item_id_internal=price_id,
        name="Pro",
        description={"subtitle": "Pro", "features": []},
        amount=1000,
        currency="usd",
        plan_type="one_time_purchase",
        active=True,
        tokens_to_award=1000,
        plan_metadata={},
    )
    values.update(overrides)
    plan = SubscriptionPlan(**values)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


def make_transaction(db: Session, wallet: TokenWallet, tokens: int = 500, status: str = PaymentStatus.PENDING,
                     purchase_mode: str = "one_time", **overrides) -> PaymentTransaction:
    values = dict(
        user_id=wallet.user_id,
        organization_id=wallet.organization_id,
        target_wallet_id=wallet.wallet_id,
        payment_gateway_id="stripe",
        purchase_mode=purchase_mode,
        status=status,
        amount_requested_fiat=10,
        currency_requested_fiat="usd",
        tokens_to_award=tokens,
        metadata_json={"itemId": "price_pro"},
    )
    values.update(overrides)
    transaction = PaymentTransaction(**values)
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


def make_user_subscription(db: Session, user_id: str = "user_1", plan: SubscriptionPlan = None,
                           stripe_subscription_id: str = "sub_1", stripe_customer_id: str = "cus_1",
                           status: str = "active") -> UserSubscription:
    row = UserSubscription(
        user_id=user_id,
        plan_id=plan.id if plan else None,
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=stripe_customer_id,
        status=status,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def checkout_session(transaction_id: str = None, session_id: str = "cs_test_1", mode: str = "payment",
                     **extra) -> dict:
    metadata = {}
    if transaction_id:
        metadata["internal_payment_id"] = f"{settings.INTERNAL_PAYMENT_ID_PREFIX}{transaction_id}"
    session = {"id": session_id, "object": "checkout.session", "mode": mode, "metadata": metadata}
    session.update(extra)
    return session


def sign_payload(payload: str, secret: str = None, timestamp: int = None) -> str:
    """Build a stripe-signature header for ``payload``"""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event: dict) -> str:
    return json.dumps(event)
