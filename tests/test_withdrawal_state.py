"""
Tests for withdrawal submission and the withdrawal state machine

Tests cover:
1. Submission validation and the pending-bucket hold
2. Every transition edge and its ledger effect
3. Idempotence and terminal states
4. Review flag on ledger inconsistency
5. Receipts and notifications after commit
"""
import os

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from extensions import db, mail
from models import Withdrawal, LedgerBucket, LedgerEvent, PaymentMethod
from settlement.exceptions import (ConsistencyError, DuplicateReferenceError,
                                   UniquenessConflict, WithdrawalValidationError)
from settlement.gateway import GatewayResult
from settlement.ledger import LedgerManager
from settlement.withdrawal_state import WithdrawalStateMachine, WithdrawalRecordManager, TRANSITIONS

from helpers import BANK_DETAILS, successful, processing, failed, declined, reload

NAIRA = "naira"
AMOUNT = 500_000


def buckets(user_id):
    return LedgerManager.balances(user_id).get(NAIRA)


class TestSubmission:
    """Creating a withdrawal holds its amount in pending_amt."""

    def test_submit_holds_pending(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)

        assert withdrawal.status == "pending"
        assert withdrawal.client_reference.startswith(f"WD-{user.id}-")
        assert buckets(user.id) == {"pending_amt": AMOUNT, "processing_amt": 0, "withdrawn_amt": 0}

    def test_insufficient_balance(self, make_user, seed_earnings):
        user = make_user("ada")
        seed_earnings(user, AMOUNT - 1)
        with pytest.raises(WithdrawalValidationError):
            WithdrawalRecordManager.submit_withdrawal(user.id, AMOUNT, NAIRA, "bank", BANK_DETAILS)
        assert Withdrawal.query.count() == 0

    def test_one_withdrawal_in_flight(self, make_user, make_withdrawal, seed_earnings):
        user = make_user("ada")
        make_withdrawal(user, AMOUNT)
        seed_earnings(user, AMOUNT * 3)
        with pytest.raises(WithdrawalValidationError, match="in progress"):
            WithdrawalRecordManager.submit_withdrawal(user.id, 10_000, NAIRA, "bank", BANK_DETAILS)

    def test_duplicate_client_reference(self, make_user, make_withdrawal, seed_earnings):
        first = make_user("ada")
        second = make_user("bola")
        make_withdrawal(first, AMOUNT, client_reference="WD-SHARED")
        seed_earnings(second, AMOUNT)
        with pytest.raises(DuplicateReferenceError):
            WithdrawalRecordManager.submit_withdrawal(second.id, AMOUNT, NAIRA, "bank", BANK_DETAILS,
                                                      client_reference="WD-SHARED")

    def test_bucket_insert_race_is_not_a_duplicate_reference(self, make_user, seed_earnings, monkeypatch):
        user = make_user("ada")
        seed_earnings(user, AMOUNT)

        def racing_insert(user_id, currency):
            raise IntegrityError("INSERT INTO ledger_buckets", {},
                                 Exception("UNIQUE constraint failed: ledger_buckets.user_id, ledger_buckets.currency"))

        monkeypatch.setattr(LedgerManager, "lock_buckets", staticmethod(racing_insert))

        with pytest.raises(UniquenessConflict):
            WithdrawalRecordManager.submit_withdrawal(user.id, AMOUNT, NAIRA, "bank", BANK_DETAILS,
                                                      client_reference="WD-RACE")
        assert Withdrawal.query.count() == 0

    @pytest.mark.parametrize("amount", [0, -5, 10.5, True, 999])
    def test_invalid_amounts(self, make_user, seed_earnings, amount):
        user = make_user("ada")
        seed_earnings(user, AMOUNT)
        with pytest.raises(WithdrawalValidationError):
            WithdrawalRecordManager.submit_withdrawal(user.id, amount, NAIRA, "bank", BANK_DETAILS)

    def test_missing_payment_details(self, make_user, seed_earnings):
        user = make_user("ada")
        seed_earnings(user, AMOUNT)
        with pytest.raises(WithdrawalValidationError, match="walletAddress"):
            WithdrawalRecordManager.submit_withdrawal(user.id, AMOUNT, NAIRA, PaymentMethod.CRYPTO.value,
                                                      {"cryptoType": "USDT"})

    def test_banned_user_cannot_withdraw(self, make_user, seed_earnings):
        user = make_user("ada", is_banned=True)
        seed_earnings(user, AMOUNT)
        with pytest.raises(WithdrawalValidationError):
            WithdrawalRecordManager.submit_withdrawal(user.id, AMOUNT, NAIRA, "bank", BANK_DETAILS)

    def test_available_balance_nets_out_held_buckets(self, make_user, make_withdrawal, seed_earnings):
        user = make_user("ada")
        make_withdrawal(user, AMOUNT)
        seed_earnings(user, AMOUNT * 2)
        assert WithdrawalRecordManager.available_balance(user.id, NAIRA) == AMOUNT


class TestTransitions:
    """(current status, gateway status) -> next status and bucket effect."""

    @pytest.mark.parametrize("result, status, expected", [
        (successful(), "paid", {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": AMOUNT}),
        (processing(), "processing", {"pending_amt": 0, "processing_amt": AMOUNT, "withdrawn_amt": 0}),
        (failed(), "failed", {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": 0}),
        (declined(), "failed", {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": 0}),
    ])
    def test_from_pending(self, make_user, make_withdrawal, result, status, expected):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)

        outcome = WithdrawalStateMachine().advance(withdrawal.id, result)

        assert outcome.changed is True
        assert outcome.new_status == status
        assert reload(Withdrawal, withdrawal.id).status == status
        assert buckets(user.id) == expected

    def test_processing_then_paid(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        machine = WithdrawalStateMachine()

        machine.advance(withdrawal.id, processing())
        machine.advance(withdrawal.id, successful("LNC-77"))

        record = reload(Withdrawal, withdrawal.id)
        assert record.status == "paid"
        assert record.provider_reference == "LNC-77"
        assert record.paid_at is not None
        assert buckets(user.id) == {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": AMOUNT}

    def test_processing_then_failed_releases(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        machine = WithdrawalStateMachine()

        machine.advance(withdrawal.id, processing())
        machine.advance(withdrawal.id, failed("Account closed"))

        record = reload(Withdrawal, withdrawal.id)
        assert record.status == "failed"
        assert record.failure_reason == "Account closed"
        assert buckets(user.id) == {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": 0}

    @pytest.mark.parametrize("result", [processing(), GatewayResult.unknown()])
    def test_no_op_pairs(self, make_user, make_withdrawal, result):
        """Unknown, and processing while already processing, change nothing."""
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        machine = WithdrawalStateMachine()
        machine.advance(withdrawal.id, processing())
        before = buckets(user.id)

        outcome = machine.advance(withdrawal.id, result)

        assert outcome.changed is False
        assert buckets(user.id) == before

    @pytest.mark.parametrize("result", [successful(), processing(), failed(), declined()])
    def test_terminal_states_are_final(self, make_user, make_withdrawal, result):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        machine = WithdrawalStateMachine()
        machine.advance(withdrawal.id, failed())

        outcome = machine.advance(withdrawal.id, result)

        assert outcome.changed is False
        assert reload(Withdrawal, withdrawal.id).status == "failed"

    def test_table_has_no_edges_out_of_terminal_states(self):
        assert {current for current, _ in TRANSITIONS} == {"pending", "processing"}

    def test_lost_race_leaves_row_and_ledger_alone(self, make_user, make_withdrawal, monkeypatch):
        """Another worker moves the row after it was read; the conditional update matches nothing."""
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        stale = db.session.get(Withdrawal, withdrawal.id)
        assert stale.status == "pending"
        events_before = LedgerEvent.query.count()

        monkeypatch.setattr(db.session(), "expire_on_commit", False)
        db.session.execute(text("UPDATE withdrawals SET status = 'processing' WHERE id = :id"),
                           {"id": withdrawal.id})
        db.session.commit()

        outcome = WithdrawalStateMachine().advance(withdrawal.id, successful())

        assert outcome.changed is False
        assert outcome.previous_status == "pending"
        assert reload(Withdrawal, withdrawal.id).status == "processing"
        assert buckets(user.id) == {"pending_amt": AMOUNT, "processing_amt": 0, "withdrawn_amt": 0}
        assert LedgerEvent.query.count() == events_before


class TestReviewFlag:
    """A ledger inconsistency parks the withdrawal for an operator."""

    def test_consistency_error_flags_withdrawal(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        bucket = LedgerBucket.query.filter_by(user_id=user.id, currency=NAIRA).first()
        bucket.pending_amt = 0
        db.session.commit()

        with pytest.raises(ConsistencyError):
            WithdrawalStateMachine().advance(withdrawal.id, successful())

        record = reload(Withdrawal, withdrawal.id)
        assert record.status == "pending"
        assert record.needs_review is True
        assert "pending_amt" in record.review_note

    def test_flagged_withdrawal_is_not_advanced(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        WithdrawalStateMachine.flag_for_review(withdrawal.id, "manual hold")

        outcome = WithdrawalStateMachine().advance(withdrawal.id, successful())

        assert outcome.changed is False
        assert buckets(user.id)["pending_amt"] == AMOUNT

    def test_clear_review_flag(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        WithdrawalStateMachine.flag_for_review(withdrawal.id, "manual hold")

        assert WithdrawalStateMachine.clear_review_flag(withdrawal.id) is True
        assert WithdrawalStateMachine().advance(withdrawal.id, successful()).changed is True


class TestAfterCommit:
    """Receipts and mails follow the committed transition."""

    def test_paid_writes_receipt_and_mails_user(self, app, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)

        with mail.record_messages() as outbox:
            WithdrawalStateMachine().advance(withdrawal.id, successful())

        record = reload(Withdrawal, withdrawal.id)
        assert record.receipt_path and os.path.exists(record.receipt_path)
        with open(record.receipt_path, encoding="utf-8") as fh:
            receipt = fh.read()
        assert record.client_reference in receipt
        assert "******6789" in receipt

        assert [m.subject for m in outbox] == ["Withdrawal Successful"]
        assert outbox[0].recipients == ["ada@example.com"]

    def test_failed_mails_user(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)

        with mail.record_messages() as outbox:
            WithdrawalStateMachine().advance(withdrawal.id, failed("Account closed"))

        assert [m.subject for m in outbox] == ["Withdrawal Failed"]
        assert "Account closed" in outbox[0].html

    def test_notification_errors_do_not_undo_transition(self, make_user, make_withdrawal):
        class BrokenNotifier:
            @staticmethod
            def notify_success(withdrawal):
                raise RuntimeError("smtp down")

        def broken_receipt(withdrawal):
            raise OSError("disk full")

        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        machine = WithdrawalStateMachine(notifier=BrokenNotifier, receipt_generator=broken_receipt)

        outcome = machine.advance(withdrawal.id, successful())

        assert outcome.changed is True
        assert reload(Withdrawal, withdrawal.id).status == "paid"
