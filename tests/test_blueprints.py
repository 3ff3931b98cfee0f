"""
Tests for the HTTP endpoints

Tests cover:
1. Authentication on user and admin routes
2. Withdrawal request, lookup, history and balances
3. Installment plan creation, lookup, cancellation and admin-applied payments
4. Admin triggers for jobs, reconciler and ledger tools
5. Health check
"""
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import InstallmentPlan, LedgerBucket, Withdrawal
from settlement.installment_penalty import InstallmentPenaltyJob
from settlement.ledger import LedgerManager

from helpers import BANK_DETAILS, successful, reload


def withdrawal_body(**overrides):
    body = {
        "amount": "5000.00",
        "currency": "naira",
        "payment_method": "bank",
        "payment_details": BANK_DETAILS,
    }
    body.update(overrides)
    return body


class TestAuthentication:

    def test_user_routes_need_session(self, client):
        assert client.get("/withdrawals").status_code == 401
        assert client.post("/withdrawals", json=withdrawal_body()).status_code == 401
        assert client.get("/installments/plans/PLAN-1").status_code == 401

    def test_admin_routes_need_admin_role(self, make_user, login, client):
        assert client.get("/admin/jobs").status_code == 403
        login(make_user("ada"))
        response = client.get("/admin/jobs")
        assert response.status_code == 403
        assert response.get_json() == {"error": "Forbidden"}


class TestWithdrawalRoutes:

    def test_request_withdrawal(self, make_user, seed_earnings, login):
        user = make_user("ada")
        seed_earnings(user, 500_000)
        client = login(user)

        response = client.post("/withdrawals", json=withdrawal_body(client_reference="WD-API-1"))

        assert response.status_code == 201
        withdrawal = response.get_json()["withdrawal"]
        assert withdrawal["amount"] == 500_000
        assert withdrawal["status"] == "pending"
        assert withdrawal["amount_display"] == "₦5,000.00"

        balances = client.get("/withdrawals/balances").get_json()
        assert balances["balances"]["naira"]["pending_amt"] == 500_000
        assert balances["balances"]["naira"]["available"] == 0
        assert "bank" in balances["payment_methods"]

    def test_duplicate_reference_conflicts(self, make_user, make_withdrawal, seed_earnings, login):
        make_withdrawal(make_user("ada"), 500_000, client_reference="WD-SHARED")
        other = make_user("bola")
        seed_earnings(other, 500_000)

        response = login(other).post("/withdrawals", json=withdrawal_body(client_reference="WD-SHARED"))

        assert response.status_code == 409

    def test_concurrent_bucket_insert_is_retryable(self, make_user, seed_earnings, login, monkeypatch):
        user = make_user("ada")
        seed_earnings(user, 500_000)

        def racing_insert(user_id, currency):
            raise IntegrityError("INSERT INTO ledger_buckets", {},
                                 Exception("UNIQUE constraint failed: ledger_buckets.user_id, ledger_buckets.currency"))

        monkeypatch.setattr(LedgerManager, "lock_buckets", staticmethod(racing_insert))

        response = login(user).post("/withdrawals", json=withdrawal_body(client_reference="WD-RACE"))

        assert response.status_code == 409
        assert response.get_json()["retry"] is True
        assert "Client reference" not in response.get_json()["error"]
        assert Withdrawal.query.count() == 0

    def test_validation_errors(self, make_user, seed_earnings, login):
        user = make_user("ada")
        seed_earnings(user, 500_000)
        client = login(user)

        assert client.post("/withdrawals", json=withdrawal_body(amount="lots")).status_code == 400
        assert client.post("/withdrawals", json=withdrawal_body(amount=None)).status_code == 400
        assert client.post("/withdrawals", json=withdrawal_body(amount="9000.00")).status_code == 400
        assert client.post("/withdrawals", data="amount=5000").status_code == 400
        assert Withdrawal.query.count() == 0

    def test_lookup_is_scoped_to_owner(self, make_user, make_withdrawal, login):
        owner = make_user("ada")
        withdrawal = make_withdrawal(owner, 500_000)
        client = login(owner)

        assert client.get(f"/withdrawals/{withdrawal.id}").status_code == 200
        by_ref = client.get(f"/withdrawals/by-reference/{withdrawal.client_reference}")
        assert by_ref.get_json()["withdrawal"]["id"] == withdrawal.id
        history = client.get("/withdrawals").get_json()
        assert history["total"] == 1

        login(make_user("bola"))
        assert client.get(f"/withdrawals/{withdrawal.id}").status_code == 404
        assert client.get(f"/withdrawals/by-reference/{withdrawal.client_reference}").status_code == 404


class TestInstallmentRoutes:

    def test_create_and_lookup(self, make_user, login):
        client = login(make_user("ada"))

        created = client.post("/installments/plans", json={"total_price": "3000.00", "months": 3,
                                                          "total_shares": 3})
        assert created.status_code == 201
        plan = created.get_json()["plan"]
        assert plan["total_price"] == 300_000
        assert plan["late_fee_cap"] == 22_500
        assert len(plan["installments"]) == 3

        fetched = client.get(f"/installments/plans/{plan['plan_ref']}")
        assert fetched.get_json()["plan"]["id"] == plan["id"]

    def test_holder_cannot_record_payments(self, make_user, login):
        client = login(make_user("ada"))
        plan = client.post("/installments/plans", json={"total_price": "10000.00", "months": 2}).get_json()["plan"]

        assert client.post(f"/installments/plans/{plan['plan_ref']}/payments",
                           json={"amount": "10000.00"}).status_code == 404
        assert client.post(f"/admin/installments/plans/{plan['plan_ref']}/payments",
                           json={"amount": "10000.00", "payment_reference": "SELF"}).status_code == 403

        record = reload(InstallmentPlan, plan["id"])
        assert record.status == "pending"
        assert record.total_paid_amount == 0

    def test_bad_requests(self, make_user, login):
        client = login(make_user("ada"))

        assert client.post("/installments/plans", json={"months": 3}).status_code == 400
        assert client.post("/installments/plans", json={"total_price": "100", "months": 0}).status_code == 400
        assert client.get("/installments/plans/PLAN-NOPE").status_code == 404

        response = client.post("/installments/plans", json={"total_price": "100", "months": 1, "currency": "eur"})
        assert response.status_code == 400
        assert response.get_json()["error"] == "Unsupported currency: eur"

    def test_holder_cancels_unpaid_plan(self, make_user, login):
        client = login(make_user("ada"))
        plan = client.post("/installments/plans", json={"total_price": "100", "months": 1}).get_json()["plan"]

        response = client.post(f"/installments/plans/{plan['plan_ref']}/cancel", json={"reason": "Too dear"})

        assert response.status_code == 200
        assert response.get_json()["plan"]["status"] == "cancelled"
        assert response.get_json()["plan"]["cancellation_reason"] == "Too dear"
        assert client.post(f"/installments/plans/{plan['plan_ref']}/cancel").status_code == 400
        assert client.post("/installments/plans/PLAN-NOPE/cancel").status_code == 404

        login(make_user("bola"))
        assert client.post(f"/installments/plans/{plan['plan_ref']}/cancel").status_code == 404


class TestAdminInstallmentRoutes:

    def test_admin_applies_verified_payment(self, make_user, login):
        holder = make_user("ada")
        plan = InstallmentPenaltyJob.create_plan(holder.id, 300_000, 3)
        client = login(make_user("root", role="admin"))
        url = f"/admin/installments/plans/{plan.plan_ref}/payments"

        assert client.post(url, json={"amount": "1000.00"}).status_code == 400
        paid = client.post(url, json={"amount": "1000.00", "payment_reference": "LNC-881"})

        assert paid.status_code == 200
        body = paid.get_json()["plan"]
        assert body["status"] == "active"
        assert body["remaining_balance"] == 200_000

        assert client.post(url, json={"amount": "9000.00", "payment_reference": "LNC-882"}).status_code == 400
        assert client.post("/admin/installments/plans/PLAN-NOPE/payments",
                           json={"amount": "1", "payment_reference": "LNC-883"}).status_code == 404

    def test_holder_cannot_cancel_after_paying_but_admin_can(self, make_user, login):
        holder = make_user("ada")
        job = InstallmentPenaltyJob()
        plan = job.create_plan(holder.id, 300_000, 3)
        job.apply_payment(plan.id, 100_000)
        client = login(holder)

        assert client.post(f"/installments/plans/{plan.plan_ref}/cancel").status_code == 400
        assert client.post(f"/admin/installments/plans/{plan.plan_ref}/cancel").status_code == 403

        login(make_user("root", role="admin"))
        response = client.post(f"/admin/installments/plans/{plan.plan_ref}/cancel", json={"reason": "Fraud"})
        assert response.status_code == 200
        assert response.get_json()["plan"]["status"] == "cancelled"
        assert client.post(f"/admin/installments/plans/{plan.plan_ref}/cancel").status_code == 400


class TestAdminRoutes:

    def test_referral_recompute(self, make_user, make_purchase, login):
        admin = make_user("root", role="admin")
        buyer = make_user("ada", referred_by="root")
        make_purchase(buyer, 100_000)
        client = login(admin)

        response = client.post("/admin/referrals/recompute")

        assert response.status_code == 200
        assert response.get_json()["stats"]["commissions_created"] == 1
        assert client.get("/admin/referrals/status").get_json()["last_stats"]["processed"] == 2

    def test_referral_recompute_conflict(self, make_user, supervisor, login):
        client = login(make_user("root", role="admin"))
        supervisor.referral_job._run_lock.acquire()
        try:
            response = client.post("/admin/referrals/recompute")
        finally:
            supervisor.referral_job._run_lock.release()

        assert response.status_code == 409

    def test_penalty_check_modes(self, make_user, login):
        client = login(make_user("root", role="admin"))

        assert client.post("/admin/installments/penalty-check").get_json()["mode"] == "daily"
        assert client.post("/admin/installments/penalty-check?mode=monthly").status_code == 200
        assert client.post("/admin/installments/penalty-check?mode=hourly").status_code == 400
        assert client.get("/admin/installments/stats").get_json()["stats"]["total_plans"] == 0

    def test_reconciler_run_and_verify(self, make_user, make_withdrawal, fake_gateway, login):
        user = make_user("ada")
        first = make_withdrawal(user, 500_000)
        fake_gateway.script(first.client_reference, successful())
        client = login(make_user("root", role="admin"))

        run = client.post("/admin/reconciler/run").get_json()
        assert run["results"]["pending"]["updated"] == 1
        assert reload(Withdrawal, first.id).status == "paid"
        assert client.get("/admin/reconciler/status").get_json()["run_count"] == 2

        verify = client.post(f"/admin/withdrawals/{first.id}/verify").get_json()
        assert verify["changed"] is False
        assert client.post("/admin/withdrawals/999/verify").status_code == 404

    def test_verify_flags_inconsistent_withdrawal(self, make_user, make_withdrawal, fake_gateway, login):
        user = make_user("ada")
        withdrawal = make_withdrawal(user, 500_000)
        fake_gateway.script(withdrawal.client_reference, successful())
        bucket = LedgerBucket.query.filter_by(user_id=user.id).first()
        bucket.pending_amt = 0
        db.session.commit()
        client = login(make_user("root", role="admin"))

        response = client.post(f"/admin/withdrawals/{withdrawal.id}/verify")
        assert response.status_code == 409
        assert response.get_json()["needs_review"] is True

        assert client.get("/admin/ledger/audit").get_json()["consistent"] is False
        rebuilt = client.post("/admin/ledger/rebuild", json={"user_id": user.id}).get_json()
        assert rebuilt["changed"] is True
        assert client.get("/admin/ledger/audit").get_json()["consistent"] is True

        assert client.post(f"/admin/withdrawals/{withdrawal.id}/clear-review").status_code == 200
        assert client.post(f"/admin/withdrawals/{withdrawal.id}/clear-review").status_code == 404

    def test_jobs_overview(self, make_user, login):
        client = login(make_user("root", role="admin"))

        body = client.get("/admin/jobs").get_json()

        assert body["scheduler_running"] is False
        assert body["settings"]["gateway_configured"] is True
        assert body["settings"]["referral_rates"] == {"1": "15", "2": "3", "3": "2"}


class TestHealth:

    def test_healthz(self, client):
        body = client.get("/healthz").get_json()
        assert body["status"] == "ok"
        assert body["database"] == "ok"
        assert body["scheduler_running"] is False
