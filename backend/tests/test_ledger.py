"""Payment transaction ledger tests"""
import pytest
from unittest.mock import Mock

from tokenpay.models.payment_transaction import PaymentStatus
from tokenpay.models.token_wallet_transaction import TokenWalletTransaction
from tokenpay.schemas.payments import Outcome
from tokenpay.services.ledger_service import (
    with_internal_prefix, strip_internal_prefix, transition_status, replay_result, award_tokens,
    get_transaction, get_transaction_by_gateway_ref, mark_failed_quietly, record_link_failure, LINK_ERROR_KEY
)
from tokenpay.services.stripe_service import HandlerContext
from tokenpay.services.token_wallet_service import get_balance

from conftest import make_transaction


@pytest.mark.high
class TestInternalPrefix:
    """Payment ids travel through Stripe metadata with a prefix"""

    def test_round_trip(self):
        assert strip_internal_prefix(with_internal_prefix("abc")) == "abc"

    def test_unprefixed_value_is_accepted(self):
        assert strip_internal_prefix("abc") == "abc"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_values(self, value):
        assert strip_internal_prefix(value) is None


@pytest.mark.high
class TestTransitionStatus:
    """Statuses only move forward along allowed edges"""

    def test_pending_to_completed_records_gateway_ref(self, db_session, wallet):
        tx = make_transaction(db_session, wallet)

        assert transition_status(db_session, tx.id, PaymentStatus.COMPLETED, gateway_transaction_id="cs_1") is True

        db_session.refresh(tx)
        assert tx.status == PaymentStatus.COMPLETED
        assert tx.gateway_transaction_id == "cs_1"
        assert get_transaction_by_gateway_ref(db_session, "cs_1").id == tx.id

    @pytest.mark.parametrize("target", [PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED])
    def test_terminal_status_is_never_left(self, db_session, wallet, target):
        tx = make_transaction(db_session, wallet, status=PaymentStatus.FAILED)

        assert transition_status(db_session, tx.id, target) is False

        db_session.refresh(tx)
        assert tx.status == PaymentStatus.FAILED

    def test_token_award_failed_only_from_completed(self, db_session, wallet):
        pending = make_transaction(db_session, wallet)
        completed = make_transaction(db_session, wallet, status=PaymentStatus.COMPLETED)

        assert transition_status(db_session, pending.id, PaymentStatus.TOKEN_AWARD_FAILED) is False
        assert transition_status(db_session, completed.id, PaymentStatus.TOKEN_AWARD_FAILED) is True

    def test_pending_is_not_a_target(self, db_session, wallet):
        tx = make_transaction(db_session, wallet, status=PaymentStatus.COMPLETED)

        with pytest.raises(ValueError):
            transition_status(db_session, tx.id, PaymentStatus.PENDING)

    def test_mark_failed_quietly_ignores_missing_id(self, db_session, wallet):
        tx = make_transaction(db_session, wallet)

        mark_failed_quietly(db_session, None)
        mark_failed_quietly(db_session, tx.id)

        assert get_transaction(db_session, tx.id).status == PaymentStatus.FAILED


@pytest.mark.high
class TestReplayResult:
    """Redeliveries against terminal transactions"""

    def test_completed_echoes_recorded_grant(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, tokens=500, status=PaymentStatus.COMPLETED, gateway_transaction_id="cs_1")
        award_tokens(ctx, tx, notes="first delivery")

        result = replay_result(ctx, tx, "cs_1")

        assert result.success is True
        assert result.tokens_awarded == 500
        assert result.error is None
        assert result.outcome == Outcome.REPLAYED

    def test_completed_without_grant_reports_zero(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, tokens=500, status=PaymentStatus.COMPLETED)

        result = replay_result(ctx, tx, "cs_1")

        assert result.success is True
        assert result.tokens_awarded == 0
        assert result.outcome == Outcome.REPLAYED

    def test_completed_with_link_failure_repeats_it(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, tokens=500, status=PaymentStatus.COMPLETED)
        record_link_failure(db_session, tx, "Failed to upsert user_subscription for sub_1: write failed")

        result = replay_result(ctx, tx, "cs_1")

        assert result.success is False
        assert result.tokens_awarded == 0
        assert result.error == "Failed to upsert user_subscription for sub_1: write failed"
        assert result.outcome == Outcome.PARTIAL
        assert get_transaction(db_session, tx.id).metadata_json[LINK_ERROR_KEY] == result.error

    @pytest.mark.parametrize("status", [PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.TOKEN_AWARD_FAILED])
    def test_other_terminal_statuses_acknowledge_with_zero_tokens(self, ctx, db_session, wallet, status):
        tx = make_transaction(db_session, wallet, status=status)

        result = replay_result(ctx, tx, "cs_1")

        assert result.success is True
        assert result.tokens_awarded == 0
        assert result.error == f"Payment transaction {tx.id} was previously marked as {status}."
        assert result.message == result.error
        assert result.outcome == Outcome.REPLAYED


@pytest.mark.critical
class TestAwardTokens:
    """Token grants for completed transactions"""

    def test_award_credits_wallet_once(self, ctx, db_session, wallet):
        tx = make_transaction(db_session, wallet, tokens=300, status=PaymentStatus.COMPLETED)

        first = award_tokens(ctx, tx, notes="test")
        second = award_tokens(ctx, tx, notes="test")

        assert first.success and second.success
        assert first.tokens_awarded == second.tokens_awarded == 300
        assert get_balance(db_session, wallet.wallet_id) == 300
        entry = db_session.query(TokenWalletTransaction).one()
        assert entry.related_entity_id == tx.id
        assert entry.related_entity_type == "payment_transactions"

    def test_zero_tokens_skips_wallet(self, db_session, wallet):
        wallets = Mock()
        ctx = HandlerContext(db=db_session, gateway=Mock(), wallets=wallets)
        tx = make_transaction(db_session, wallet, tokens=0, status=PaymentStatus.COMPLETED)

        result = award_tokens(ctx, tx, notes="test")

        assert result.success is True
        assert result.tokens_awarded == 0
        wallets.record_transaction.assert_not_called()

    def test_wallet_failure_marks_token_award_failed(self, db_session, wallet):
        """Scenario: the wallet grant throws after the payment completed"""
        wallets = Mock()
        wallets.record_transaction.side_effect = RuntimeError("wallet service unavailable")
        ctx = HandlerContext(db=db_session, gateway=Mock(), wallets=wallets)
        tx = make_transaction(db_session, wallet, tokens=300, status=PaymentStatus.COMPLETED)

        result = award_tokens(ctx, tx, notes="test")

        assert result.success is False
        assert result.tokens_awarded == 0
        assert "wallet service unavailable" in result.error
        assert result.outcome == Outcome.PARTIAL
        assert get_transaction(db_session, tx.id).status == PaymentStatus.TOKEN_AWARD_FAILED
