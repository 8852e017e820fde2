"""Checkout session webhook handler tests"""
import pytest
from unittest.mock import Mock, patch
from sqlalchemy.exc import SQLAlchemyError

from tokenpay.models.payment_transaction import PaymentStatus
from tokenpay.models.token_wallet_transaction import TokenWalletTransaction
from tokenpay.models.user_subscription import UserSubscription
from tokenpay.schemas.payments import Outcome
from tokenpay.services import ledger_service
from tokenpay.services.checkout_service import handle_checkout_session_completed, handle_checkout_session_expired
from tokenpay.services.ledger_service import get_transaction
from tokenpay.services.stripe_service import HandlerContext
from tokenpay.services.token_wallet_service import get_balance

from conftest import make_wallet, make_plan, make_transaction, make_event, checkout_session


def completed_event(transaction_id=None, **session_fields):
    return make_event("checkout.session.completed", checkout_session(transaction_id, **session_fields))


def gateway_subscription(sub_id="sub_1", price_id="price_sub", status="active"):
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "cancel_at_period_end": False,
        "items": {"data": [{
            "price": {"id": price_id},
            "current_period_start": 1760000000,
            "current_period_end": 1762592000,
        }]},
    }


@pytest.mark.critical
class TestCheckoutCompletedOneTime:
    """One-time purchases credit the target wallet exactly once"""

    def test_completes_transaction_and_awards_tokens(self, ctx, db_session, wallet):
        """Scenario: first delivery of a one-time checkout"""
        tx = make_transaction(db_session, wallet, tokens=500)

        result = handle_checkout_session_completed(ctx, completed_event(tx.id))

        assert result.success is True
        assert result.transaction_id == tx.id
        assert result.tokens_awarded == 500
        assert result.payment_gateway_transaction_id == "cs_test_1"
        assert result.outcome == Outcome.PROCESSED
        stored = get_transaction(db_session, tx.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.gateway_transaction_id == "cs_test_1"
        assert get_balance(db_session, wallet.wallet_id) == 500

    def test_redelivery_returns_same_result_without_second_credit(self, ctx, db_session, wallet):
        """Scenario: the same event is delivered again after success"""
        tx = make_transaction(db_session, wallet, tokens=500)
        event = completed_event(tx.id)

        first = handle_checkout_session_completed(ctx, event)
        second = handle_checkout_session_completed(ctx, event)

        assert (second.success, second.transaction_id, second.tokens_awarded) == \
            (first.success, first.transaction_id, first.tokens_awarded)
        assert second.error is None
        assert second.outcome == Outcome.REPLAYED
        assert db_session.query(TokenWalletTransaction).count() == 1
        assert get_balance(db_session, wallet.wallet_id) == 500

    def test_concurrent_deliveries_credit_once(self, file_session_factory):
        """Two deliveries that both read PENDING still produce one wallet entry"""
        setup = file_session_factory()
        wallet = make_wallet(setup)
        tx = make_transaction(setup, wallet, tokens=500)
        tx_id, wallet_id = tx.id, wallet.wallet_id
        setup.close()

        event = completed_event(tx_id)
        real_get_transaction = ledger_service.get_transaction
        state = {"raced": False}
        results = {}

        def get_transaction_then_race(db, transaction_id):
            row = real_get_transaction(db, transaction_id)
            if not state["raced"]:
                # The competing delivery runs to completion after we read PENDING
                state["raced"] = True
                other = file_session_factory()
                try:
                    results["second"] = handle_checkout_session_completed(
                        HandlerContext(db=other, gateway=Mock()), event
                    )
                finally:
                    other.close()
            return row

        first_session = file_session_factory()
        try:
            with patch('tokenpay.services.checkout_service.get_transaction', side_effect=get_transaction_then_race):
                results["first"] = handle_checkout_session_completed(
                    HandlerContext(db=first_session, gateway=Mock()), event
                )
        finally:
            first_session.close()

        assert results["first"].success is True
        assert results["second"].success is True
        assert results["first"].tokens_awarded == 500
        assert results["second"].tokens_awarded == 500

        verify = file_session_factory()
        try:
            assert verify.query(TokenWalletTransaction).filter(
                TokenWalletTransaction.related_entity_id == tx_id
            ).count() == 1
            assert get_balance(verify, wallet_id) == 500
            assert get_transaction(verify, tx_id).status == PaymentStatus.COMPLETED
        finally:
            verify.close()

    def test_wallet_failure_leaves_token_award_failed(self, db_session, wallet):
        """Scenario: the wallet grant throws"""
        wallets = Mock()
        wallets.record_transaction.side_effect = RuntimeError("ledger down")
        ctx = HandlerContext(db=db_session, gateway=Mock(), wallets=wallets)
        tx = make_transaction(db_session, wallet, tokens=500)

        result = handle_checkout_session_completed(ctx, completed_event(tx.id))

        assert result.success is False
        assert result.tokens_awarded == 0
        assert result.outcome == Outcome.PARTIAL
        assert get_transaction(db_session, tx.id).status == PaymentStatus.TOKEN_AWARD_FAILED

    def test_unexpected_error_marks_transaction_failed(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, tokens=500)

        with patch('tokenpay.services.checkout_service.transition_status', side_effect=RuntimeError("boom")):
            result = handle_checkout_session_completed(ctx, completed_event(tx.id))

        assert result.success is False
        assert result.outcome == Outcome.INTERNAL_ERROR
        assert result.should_retry is True
        assert get_transaction(db_session, tx.id).status == PaymentStatus.FAILED


@pytest.mark.high
class TestCheckoutCompletedValidation:
    """Events that cannot be matched to a transaction"""

    def test_missing_internal_id(self, ctx, db_session, wallet):
        """Scenario: metadata carries no internal payment id"""
        tx = make_transaction(db_session, wallet)

        result = handle_checkout_session_completed(ctx, completed_event(None))

        assert result.success is False
        assert result.error == "Internal payment ID missing from webhook metadata."
        assert result.outcome == Outcome.VALIDATION_ERROR
        assert get_transaction(db_session, tx.id).status == PaymentStatus.PENDING

    def test_unknown_transaction(self, ctx, db_session):
        result = handle_checkout_session_completed(ctx, completed_event("does-not-exist"))

        assert result.success is False
        assert result.error == "Payment transaction does-not-exist not found."
        assert result.outcome == Outcome.NOT_FOUND

    @pytest.mark.parametrize("status", [PaymentStatus.FAILED, PaymentStatus.EXPIRED])
    def test_terminal_transaction_is_acknowledged(self, ctx, db_session, wallet, status):
        tx = make_transaction(db_session, wallet, status=status)

        result = handle_checkout_session_completed(ctx, completed_event(tx.id))

        assert result.success is True
        assert result.tokens_awarded == 0
        assert status in result.error
        assert get_transaction(db_session, tx.id).status == status
        assert get_balance(db_session, wallet.wallet_id) == 0


@pytest.mark.high
class TestCheckoutCompletedSubscription:
    """Subscription checkouts link a UserSubscription before crediting"""

    def _subscription_tx(self, db_session, wallet):
        make_plan(db_session, price_id="price_sub", plan_type="subscription", interval="month", interval_count=1)
        return make_transaction(db_session, wallet, tokens=1000, purchase_mode="subscription",
                                metadata_json={"itemId": "price_sub"})

    def test_links_subscription_and_awards(self, ctx, db_session, gateway, wallet):
        tx = self._subscription_tx(db_session, wallet)
        gateway.Subscription.retrieve.return_value = gateway_subscription()

        result = handle_checkout_session_completed(
            ctx, completed_event(tx.id, mode="subscription", subscription="sub_1", customer="cus_1")
        )

        assert result.success is True
        assert result.tokens_awarded == 1000
        gateway.Subscription.retrieve.assert_called_once_with("sub_1")
        row = db_session.query(UserSubscription).filter(UserSubscription.stripe_subscription_id == "sub_1").one()
        assert row.user_id == wallet.user_id
        assert row.stripe_customer_id == "cus_1"
        assert row.status == "active"
        assert row.plan.stripe_price_id == "price_sub"
        assert row.current_period_end is not None

    def test_missing_subscription_id_fails_payment(self, ctx, db_session, gateway, wallet):
        tx = self._subscription_tx(db_session, wallet)

        result = handle_checkout_session_completed(ctx, completed_event(tx.id, mode="subscription", customer="cus_1"))

        assert result.success is False
        assert result.outcome == Outcome.VALIDATION_ERROR
        assert get_transaction(db_session, tx.id).status == PaymentStatus.FAILED
        gateway.Subscription.retrieve.assert_not_called()

    def test_unknown_plan_fails_payment(self, ctx, db_session, gateway, wallet):
        tx = make_transaction(db_session, wallet, purchase_mode="subscription", metadata_json={"itemId": "price_gone"})

        result = handle_checkout_session_completed(
            ctx, completed_event(tx.id, mode="subscription", subscription="sub_1", customer="cus_1")
        )

        assert result.success is False
        assert result.error == "Could not find internal subscription plan ID for item_id: price_gone"
        assert result.outcome == Outcome.NOT_FOUND
        assert get_transaction(db_session, tx.id).status == PaymentStatus.FAILED

    def test_gateway_failure_fails_payment(self, ctx, db_session, gateway, wallet):
        tx = self._subscription_tx(db_session, wallet)
        gateway.Subscription.retrieve.side_effect = RuntimeError("stripe unavailable")

        result = handle_checkout_session_completed(
            ctx, completed_event(tx.id, mode="subscription", subscription="sub_1", customer="cus_1")
        )

        assert result.success is False
        assert result.outcome == Outcome.DOWNSTREAM_ERROR
        assert "stripe unavailable" in result.error
        assert get_transaction(db_session, tx.id).status == PaymentStatus.FAILED

    def test_upsert_failure_completes_without_tokens(self, ctx, db_session, gateway, wallet):
        """The charge went through, so the transaction completes but nothing is credited"""
        tx = self._subscription_tx(db_session, wallet)
        gateway.Subscription.retrieve.return_value = gateway_subscription()

        with patch('tokenpay.services.checkout_service.upsert_user_subscription',
                   side_effect=SQLAlchemyError("write failed")):
            result = handle_checkout_session_completed(
                ctx, completed_event(tx.id, mode="subscription", subscription="sub_1", customer="cus_1")
            )

        assert result.success is False
        assert result.tokens_awarded == 0
        assert result.outcome == Outcome.PARTIAL
        assert result.error.startswith("Failed to upsert user_subscription for sub_1")
        assert get_transaction(db_session, tx.id).status == PaymentStatus.COMPLETED
        assert get_balance(db_session, wallet.wallet_id) == 0

    def test_redelivery_after_upsert_failure_reports_no_tokens(self, ctx, db_session, gateway, wallet):
        tx = self._subscription_tx(db_session, wallet)
        gateway.Subscription.retrieve.return_value = gateway_subscription()
        event = completed_event(tx.id, mode="subscription", subscription="sub_1", customer="cus_1")

        with patch('tokenpay.services.checkout_service.upsert_user_subscription',
                   side_effect=SQLAlchemyError("write failed")):
            first = handle_checkout_session_completed(ctx, event)
        second = handle_checkout_session_completed(ctx, event)

        assert (second.success, second.tokens_awarded, second.error, second.outcome) == \
            (first.success, first.tokens_awarded, first.error, first.outcome)
        assert second.tokens_awarded == 0
        assert second.outcome == Outcome.PARTIAL
        assert db_session.query(TokenWalletTransaction).count() == 0
        assert get_balance(db_session, wallet.wallet_id) == 0


@pytest.mark.medium
class TestCheckoutExpired:
    """Abandoned checkouts"""

    def test_pending_transaction_expires(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet)

        result = handle_checkout_session_expired(ctx, make_event("checkout.session.expired", checkout_session(tx.id)))

        assert result.success is True
        assert result.outcome == Outcome.PROCESSED
        assert get_transaction(db_session, tx.id).status == PaymentStatus.EXPIRED

    def test_completed_transaction_is_left_alone(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, status=PaymentStatus.COMPLETED)

        result = handle_checkout_session_expired(ctx, make_event("checkout.session.expired", checkout_session(tx.id)))

        assert result.success is True
        assert result.outcome == Outcome.REPLAYED
        assert get_transaction(db_session, tx.id).status == PaymentStatus.COMPLETED

    def test_missing_internal_id(self, ctx):
        result = handle_checkout_session_expired(ctx, make_event("checkout.session.expired", checkout_session(None)))

        assert result.success is False
        assert result.outcome == Outcome.VALIDATION_ERROR
