"""
Tests for the withdrawal reconciler

Tests cover:
1. Pending -> paid, pending -> processing -> paid, processing -> declined
2. Idempotence over repeated cycles
3. Skips, errors and configuration failures
4. Ledger buckets always match the withdrawals table
"""
import threading

from extensions import mail
from models import Withdrawal
from settlement.exceptions import ConfigurationError
from settlement.gateway import GatewayResult, GatewayStatus
from settlement.ledger import LedgerManager, LedgerAuditor
from settlement.reconciler import Reconciler
from settlement.withdrawal_state import WithdrawalStateMachine

from helpers import FakeGateway, successful, processing, declined, unavailable, reload

NAIRA = "naira"
AMOUNT = 10_000


def ledger(user_id):
    return LedgerManager.balances(user_id)[NAIRA]


def build_reconciler(gateway, **kwargs):
    return Reconciler(gateway_factory=lambda: gateway, **kwargs)


class TestReconcilerScenarios:
    """End-to-end flows driven by provider responses."""

    def test_pending_to_paid_fast_path(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        assert ledger(user.id)["pending_amt"] == AMOUNT

        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, successful("P1"))

        with mail.record_messages() as outbox:
            results = build_reconciler(gateway).verify_pending_withdrawals()

        record = reload(Withdrawal, withdrawal.id)
        assert record.status == "paid"
        assert record.provider_reference == "P1"
        assert ledger(user.id) == {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": AMOUNT}
        assert len(outbox) == 1
        assert results["checked"] == 1
        assert results["updated"] == 1

    def test_pending_processing_paid(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        gateway = FakeGateway()
        reconciler = build_reconciler(gateway)

        gateway.script(withdrawal.client_reference, processing())
        reconciler.verify_pending_withdrawals()
        assert reload(Withdrawal, withdrawal.id).status == "processing"
        assert ledger(user.id) == {"pending_amt": 0, "processing_amt": AMOUNT, "withdrawn_amt": 0}

        gateway.script(withdrawal.client_reference, successful())
        reconciler.verify_processing_withdrawals()
        assert reload(Withdrawal, withdrawal.id).status == "paid"
        assert ledger(user.id) == {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": AMOUNT}

    def test_declined_while_processing(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        gateway = FakeGateway()
        reconciler = build_reconciler(gateway)

        gateway.script(withdrawal.client_reference, processing())
        reconciler.verify_pending_withdrawals()
        gateway.script(withdrawal.client_reference, declined("insufficient funds at bank"))
        reconciler.verify_processing_withdrawals()

        record = reload(Withdrawal, withdrawal.id)
        assert record.status == "failed"
        assert record.failure_reason == "insufficient funds at bank"
        assert ledger(user.id) == {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": 0}

    def test_passes_only_see_their_status(self, make_user, make_withdrawal):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, successful())

        results = build_reconciler(gateway).verify_processing_withdrawals()

        assert results["checked"] == 0
        assert gateway.calls == []
        assert reload(Withdrawal, withdrawal.id).status == "pending"


class TestIdempotence:
    """Repeated cycles over the same responses change nothing further."""

    def test_second_cycle_is_a_no_op(self, make_user, make_withdrawal):
        users = [make_user(handle) for handle in ("ada", "bola", "chidi")]
        withdrawals = [make_withdrawal(u, AMOUNT * (i + 1)) for i, u in enumerate(users)]
        gateway = FakeGateway()
        gateway.script(withdrawals[0].client_reference, successful())
        gateway.script(withdrawals[1].client_reference, processing())
        gateway.script(withdrawals[2].client_reference, declined())
        reconciler = build_reconciler(gateway)

        for _ in range(2):
            reconciler.verify_pending_withdrawals()
            reconciler.verify_processing_withdrawals()
        first = {w.id: reload(Withdrawal, w.id).status for w in withdrawals}
        first_ledger = {u.id: ledger(u.id) for u in users}

        with mail.record_messages() as outbox:
            second = reconciler.verify_processing_withdrawals()

        assert {w.id: reload(Withdrawal, w.id).status for w in withdrawals} == first
        assert {u.id: ledger(u.id) for u in users} == first_ledger
        assert second["updated"] == 0
        assert outbox == []

    def test_observed_statuses_are_monotone(self, make_user, make_withdrawal):
        """Any response sequence yields a prefix of an allowed path."""
        user = make_user("ada")
        withdrawal = make_withdrawal(user, AMOUNT)
        gateway = FakeGateway()
        reconciler = build_reconciler(gateway)
        allowed = [
            ["pending", "processing", "paid"],
            ["pending", "processing", "failed"],
            ["pending", "paid"],
            ["pending", "failed"],
        ]

        observed = ["pending"]
        for response in [processing(), GatewayResult.unknown(), processing(), successful(), declined(),
                         processing()]:
            gateway.script(withdrawal.client_reference, response)
            reconciler.verify_pending_withdrawals()
            reconciler.verify_processing_withdrawals()
            status = reload(Withdrawal, withdrawal.id).status
            if status != observed[-1]:
                observed.append(status)

        assert any(path[:len(observed)] == observed for path in allowed)
        assert observed == ["pending", "processing", "paid"]


class TestFailurePolicy:
    """One bad record never aborts the cycle."""

    def test_unavailable_gateway_skips_record(self, make_user, make_withdrawal):
        first = make_withdrawal(make_user("ada"), AMOUNT)
        second = make_withdrawal(make_user("bola"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(first.client_reference, unavailable())
        gateway.script(second.client_reference, successful())

        results = build_reconciler(gateway).verify_pending_withdrawals()

        assert results["skipped"] == 1
        assert results["updated"] == 1
        assert results["errors"] == 0
        assert reload(Withdrawal, first.id).status == "pending"
        assert reload(Withdrawal, second.id).status == "paid"

    def test_unexpected_error_is_counted(self, make_user, make_withdrawal):
        first = make_withdrawal(make_user("ada"), AMOUNT)
        second = make_withdrawal(make_user("bola"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(first.client_reference, RuntimeError("boom"))
        gateway.script(second.client_reference, successful())

        results = build_reconciler(gateway).verify_pending_withdrawals()

        assert results["errors"] == 1
        assert reload(Withdrawal, second.id).status == "paid"

    def test_missing_api_key_stops_cycle(self, app, make_user, make_withdrawal):
        make_withdrawal(make_user("ada"), AMOUNT)

        def no_key():
            raise ConfigurationError("Gateway API key is not configured")

        results = Reconciler(gateway_factory=no_key).verify_pending_withdrawals()

        assert results["configuration_error"] == "Gateway API key is not configured"
        assert results["checked"] == 0

    def test_stop_event_honoured_between_records(self, make_user, make_withdrawal):
        make_withdrawal(make_user("ada"), AMOUNT)
        stop = threading.Event()
        stop.set()

        results = build_reconciler(FakeGateway(), stop_event=stop).verify_pending_withdrawals()

        assert results["stopped"] is True
        assert results["checked"] == 0

    def test_flagged_records_are_not_polled(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        WithdrawalStateMachine.flag_for_review(withdrawal.id, "held")
        gateway = FakeGateway()

        build_reconciler(gateway).verify_pending_withdrawals()

        assert gateway.calls == []


class TestLedgerMatchesWithdrawals:

    def test_buckets_equal_status_sums(self, make_user, make_withdrawal):
        users = [make_user(f"user{i}") for i in range(4)]
        responses = [successful(), processing(), declined(), GatewayResult(status=GatewayStatus.UNKNOWN)]
        gateway = FakeGateway()
        for i, (user, response) in enumerate(zip(users, responses)):
            withdrawal = make_withdrawal(user, AMOUNT + i * 1_000)
            gateway.script(withdrawal.client_reference, response)

        reconciler = build_reconciler(gateway)
        reconciler.verify_pending_withdrawals()
        reconciler.verify_processing_withdrawals()

        assert LedgerAuditor.audit_all()["consistent"] is True


class TestStatus:

    def test_status_reports_last_results(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, successful())
        reconciler = build_reconciler(gateway)

        reconciler.verify_pending_withdrawals()
        status = reconciler.status()

        assert status["is_running"] is False
        assert status["run_count"] == 1
        assert status["last_results"]["pending"]["updated"] == 1

    def test_verify_single(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, processing())

        result = build_reconciler(gateway).verify_single(withdrawal.id)

        assert result["changed"] is True
        assert result["previous_status"] == "pending"
        assert result["status"] == "processing"
        assert build_reconciler(gateway).verify_single(999)["found"] is False


class TestGatewayLifetime:
    """Every pass and manual check closes the client it opened."""

    def test_each_pass_closes_its_client(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, processing())
        reconciler = build_reconciler(gateway)

        reconciler.verify_pending_withdrawals()
        reconciler.verify_processing_withdrawals()

        assert gateway.closed == 2

    def test_client_closed_when_cycle_fails(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, ConfigurationError("Gateway rejected credentials (HTTP 401)"))

        results = build_reconciler(gateway).verify_pending_withdrawals()

        assert results["configuration_error"] is not None
        assert gateway.closed == 1

    def test_verify_single_closes_client(self, make_user, make_withdrawal):
        withdrawal = make_withdrawal(make_user("ada"), AMOUNT)
        gateway = FakeGateway()
        gateway.script(withdrawal.client_reference, unavailable())

        result = build_reconciler(gateway).verify_single(withdrawal.id)

        assert "gateway_unavailable" in result
        assert gateway.closed == 1
