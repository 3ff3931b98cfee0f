# settlement/services.py
"""
Entry points used by the blueprints and by operators. Manual triggers run
the same job objects the scheduler runs, so the re-entrancy guards apply to
both.
"""
from typing import Dict, List, Optional
import logging

from flask import current_app

from models import Withdrawal, ReferralAggregate
from settlement.exceptions import WithdrawalValidationError
from settlement.ledger import LedgerManager
from settlement.supervisor import Supervisor
from settlement.withdrawal_state import WithdrawalRecordManager, WithdrawalQueryHelper

logger = logging.getLogger(__name__)

PENALTY_MODES = ("daily", "weekly", "monthly", "reminders")


def get_supervisor() -> Supervisor:
    """The app's supervisor; created (not started) on first use."""
    supervisor = current_app.extensions.get("settlement_supervisor")
    if supervisor is None:
        supervisor = Supervisor(current_app._get_current_object())
    return supervisor


# ==========================================================
#                  JOB TRIGGERS
# ==========================================================
def trigger_referral_recompute() -> Dict:
    logger.info("Manual referral recompute triggered")
    return get_supervisor().referral_job.run()


def referral_processing_status() -> Dict:
    return get_supervisor().referral_job.processing_status()


def trigger_installment_penalty_check(mode: str = "daily") -> Dict:
    if mode not in PENALTY_MODES:
        raise ValueError(f"Unknown penalty check mode: {mode}")
    logger.info(f"Manual installment penalty check triggered ({mode})")

    job = get_supervisor().penalty_job
    if mode == "weekly":
        return job.weekly_check()
    if mode == "monthly":
        return job.monthly_check()
    if mode == "reminders":
        return job.send_payment_reminders()
    return job.daily_check()


def reconciler_status() -> Dict:
    return get_supervisor().reconciler.status()


def run_reconciler() -> Dict:
    reconciler = get_supervisor().reconciler
    return {
        "pending": reconciler.verify_pending_withdrawals(),
        "processing": reconciler.verify_processing_withdrawals(),
    }


def verify_withdrawal(withdrawal_id: int) -> Dict:
    return get_supervisor().reconciler.verify_single(withdrawal_id)


def job_status() -> Dict:
    supervisor = get_supervisor()
    return {
        "scheduler_running": supervisor.running,
        "jobs": supervisor.get_job_status(),
    }


# ==========================================================
#                  WITHDRAWALS
# ==========================================================
def submit_withdrawal(user_id: int, amount: int, currency: str, payment_method: str,
                      payment_details: Optional[Dict] = None,
                      client_reference: Optional[str] = None) -> Withdrawal:
    return WithdrawalRecordManager.submit_withdrawal(
        user_id, amount, currency, payment_method,
        payment_details=payment_details, client_reference=client_reference,
    )


def get_withdrawal(withdrawal_id: int, user_id: Optional[int] = None) -> Optional[Withdrawal]:
    return WithdrawalQueryHelper.get_withdrawal(withdrawal_id, user_id=user_id)


def get_withdrawal_by_reference(client_reference: str, user_id: Optional[int] = None) -> Optional[Withdrawal]:
    if not client_reference:
        raise WithdrawalValidationError("Client reference is required")
    return WithdrawalQueryHelper.get_withdrawal_by_ref(client_reference, user_id=user_id)


def withdrawal_history(user_id: int, limit: int = 10) -> List[Withdrawal]:
    return WithdrawalQueryHelper.get_user_withdrawals(user_id, limit=limit)


def withdrawal_balances(user_id: int) -> Dict:
    buckets = LedgerManager.balances(user_id)
    currencies = set(buckets)
    currencies |= {a.currency for a in ReferralAggregate.query.filter_by(user_id=user_id)}
    return {
        currency: {
            "available": WithdrawalRecordManager.available_balance(user_id, currency),
            **buckets.get(currency, {"pending_amt": 0, "processing_amt": 0, "withdrawn_amt": 0}),
        }
        for currency in sorted(currencies)
    }
