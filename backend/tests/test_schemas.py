"""Schema and settings tests"""
import pytest
from pydantic import ValidationError

from tokenpay.core.config import Settings
from tokenpay.schemas.payments import PaymentConfirmation, PurchaseIntent, Outcome


@pytest.mark.medium
class TestPaymentConfirmation:
    """Wire shape of handler results"""

    def test_wire_format_is_camel_case_without_nulls(self):
        result = PaymentConfirmation(success=True, transaction_id="T1", tokens_awarded=500)

        assert result.to_wire() == {
            "success": True,
            "transactionId": "T1",
            "tokensAwarded": 500,
            "outcome": "processed",
        }

    def test_only_internal_errors_are_retried(self):
        for outcome in Outcome:
            result = PaymentConfirmation(success=False, outcome=outcome)
            assert result.should_retry is (outcome == Outcome.INTERNAL_ERROR)

    def test_accepts_camel_case_input(self):
        result = PaymentConfirmation.model_validate({"success": False, "paymentGatewayTransactionId": "cs_1"})

        assert result.payment_gateway_transaction_id == "cs_1"


@pytest.mark.medium
class TestPurchaseIntent:

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            PurchaseIntent(user_id="user_1", item_id="price_1", quantity=0)


@pytest.mark.medium
class TestSettings:
    """Environment driven configuration"""

    def test_page_size_is_clamped(self):
        assert Settings(CATALOG_SYNC_PAGE_SIZE=500).CATALOG_SYNC_PAGE_SIZE == 100
        assert Settings(CATALOG_SYNC_PAGE_SIZE=0).CATALOG_SYNC_PAGE_SIZE == 1

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STRIPE_FREE_PRICE_ID", raising=False)
        monkeypatch.delenv("INTERNAL_PAYMENT_ID_PREFIX", raising=False)

        settings = Settings()

        assert settings.STRIPE_FREE_PRICE_ID == "price_FREE"
        assert settings.INTERNAL_PAYMENT_ID_PREFIX == "ptx_"
        assert settings.STRIPE_WEBHOOK_TOLERANCE == 300
