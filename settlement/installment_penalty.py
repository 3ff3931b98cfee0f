# settlement/installment_penalty.py
"""
Installment plan lifecycle and late-fee accrual.

Late fees are capped at LATE_FEE_CAP_PERCENT (7.5%) of the plan's total
price, both per installment and for the plan as a whole, and never go down.
A plan is `late` exactly when it has an unpaid installment more than
GRACE_PERIOD_DAYS past its due date.
"""
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, List, Optional
import math
import secrets
import threading
import logging

from dateutil.relativedelta import relativedelta
from flask import current_app

from extensions import db
from models import (User, InstallmentPlan, Installment, PlanStatus, InstallmentStatus,
                    SourceKind, Currency)
from settlement.clock import utcnow, as_utc
from settlement.config import SettlementConfigHelper
from settlement.exceptions import PlanNotFoundError, PlanValidationError
from settlement.money import percent_of, supported_currency
from settlement.notifications import PlanNotifier, AdminNotifier

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PlanStatus.PENDING.value, PlanStatus.ACTIVE.value, PlanStatus.LATE.value)
DAYS_PER_MONTH = 30


def late_fee_cap(plan: InstallmentPlan) -> int:
    return percent_of(plan.total_price, SettlementConfigHelper.late_fee_cap_percent(), rounding=ROUND_DOWN)


def plan_rate(plan: InstallmentPlan):
    if plan.late_fee_percentage is not None:
        return plan.late_fee_percentage
    return SettlementConfigHelper.late_fee_percentage()


def days_past_due(installment: Installment, now: datetime) -> int:
    return (now - as_utc(installment.due_date)).days


def months_overdue(days: int) -> int:
    return max(1, math.ceil(days / DAYS_PER_MONTH))


class InstallmentPenaltyJob:

    def __init__(self, notifier=PlanNotifier, admin_notifier=AdminNotifier,
                 stop_event: Optional[threading.Event] = None):
        self.notifier = notifier
        self.admin_notifier = admin_notifier
        self.stop_event = stop_event or threading.Event()
        self.last_results: Dict[str, Dict] = {}

    @staticmethod
    def _past_grace(plan: InstallmentPlan, now: datetime) -> List[Installment]:
        grace = SettlementConfigHelper.grace_period_days()
        return [
            i for i in plan.installments
            if i.status != InstallmentStatus.COMPLETED.value and days_past_due(i, now) > grace
        ]

    # ==========================================================
    #                  DAILY CHECK
    # ==========================================================
    def _evaluate_plan(self, plan: InstallmentPlan, now: datetime) -> Dict:
        """Apply overdue state and installment fees to one plan. Caller commits."""
        cap = late_fee_cap(plan)
        rate = plan_rate(plan)
        overdue = self._past_grace(plan, now)
        changed = False
        fee_increased = False
        became_late = False

        for installment in overdue:
            months = months_overdue(days_past_due(installment, now))
            fee = min(percent_of(installment.remaining * months, rate, rounding=ROUND_HALF_UP), cap)
            if fee > (installment.late_fee or 0):
                installment.late_fee = fee
                fee_increased = True
                changed = True
            if installment.status != InstallmentStatus.OVERDUE.value:
                installment.status = InstallmentStatus.OVERDUE.value
                changed = True

        if overdue:
            # never lowered here: monthly_check increments it too
            months_late = max([plan.months_late or 0] + [months_overdue(days_past_due(i, now)) for i in overdue])
            plan_fee = min(sum(i.late_fee or 0 for i in overdue), cap)
            if plan_fee > (plan.current_late_fee or 0):
                plan.current_late_fee = plan_fee
                changed = True
            if plan.status != PlanStatus.LATE.value:
                plan.status = PlanStatus.LATE.value
                became_late = True
                changed = True
            if plan.months_late != months_late:
                plan.months_late = months_late
                changed = True
        elif plan.status == PlanStatus.LATE.value:
            plan.status = PlanStatus.ACTIVE.value
            changed = True
            logger.info(f"Plan {plan.plan_ref} has no overdue installments, back to active")

        return {"changed": changed, "fee_increased": fee_increased, "became_late": became_late,
                "overdue": overdue, "cap": cap}

    def daily_check(self, now: Optional[datetime] = None) -> Dict:
        now = as_utc(now) or utcnow()
        results = {"plans_checked": 0, "penalties_applied": 0, "notifications_sent": 0,
                   "errors": 0, "stopped": False}

        plan_ids = [pid for (pid,) in db.session.query(InstallmentPlan.id).filter(
            InstallmentPlan.status.in_(OPEN_STATUSES)
        ).order_by(InstallmentPlan.id.asc()).all()]

        for plan_id in plan_ids:
            if self.stop_event.is_set():
                results["stopped"] = True
                break
            try:
                plan = InstallmentPlan.query.filter_by(id=plan_id).with_for_update().first()
                if plan is None or plan.status not in OPEN_STATUSES:
                    db.session.commit()
                    continue
                results["plans_checked"] += 1
                outcome = self._evaluate_plan(plan, now)
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                results["errors"] += 1
                logger.error(f"Daily penalty check failed for plan {plan_id}: {e}")
                continue

            if outcome["fee_increased"]:
                results["penalties_applied"] += 1
            if outcome["fee_increased"] or outcome["became_late"]:
                if self.notifier.notify_late_payment(plan, outcome["overdue"], outcome["cap"]):
                    results["notifications_sent"] += 1

        self.last_results["daily"] = results
        logger.info(f"Daily installment check: checked={results['plans_checked']} "
                    f"penalties={results['penalties_applied']} notifications={results['notifications_sent']}")
        return results

    # ==========================================================
    #                  WEEKLY CHECK
    # ==========================================================
    @staticmethod
    def weekly_stats() -> Dict:
        counts = dict(db.session.query(InstallmentPlan.status, db.func.count(InstallmentPlan.id))
                      .group_by(InstallmentPlan.status).all())
        total_plans = sum(counts.values())

        totals = {}
        rows = db.session.query(
            InstallmentPlan.currency,
            db.func.coalesce(db.func.sum(InstallmentPlan.total_price), 0),
            db.func.coalesce(db.func.sum(InstallmentPlan.total_paid_amount), 0),
        ).filter(
            InstallmentPlan.status != PlanStatus.CANCELLED.value
        ).group_by(InstallmentPlan.currency).all()
        for currency, total_value, total_paid in rows:
            totals[currency] = {
                "total_value": int(total_value),
                "total_paid": int(total_paid),
                "total_pending": int(total_value) - int(total_paid),
            }

        completed = counts.get(PlanStatus.COMPLETED.value, 0)
        return {
            "total_plans": total_plans,
            "pending_plans": counts.get(PlanStatus.PENDING.value, 0),
            "active_plans": counts.get(PlanStatus.ACTIVE.value, 0),
            "late_plans": counts.get(PlanStatus.LATE.value, 0),
            "completed_plans": completed,
            "cancelled_plans": counts.get(PlanStatus.CANCELLED.value, 0),
            "completion_rate": round(completed / total_plans * 100, 2) if total_plans else 0,
            "totals": totals,
        }

    def weekly_check(self, now: Optional[datetime] = None) -> Dict:
        penalty_results = self.daily_check(now)
        stats = self.weekly_stats()
        summary_sent = self.admin_notifier.weekly_summary(
            current_app.config.get("ADMIN_EMAIL"), stats, penalty_results
        )
        results = {"penalty_results": penalty_results, "stats": stats, "summary_sent": summary_sent}
        self.last_results["weekly"] = results
        return results

    # ==========================================================
    #                  MONTHLY CHECK
    # ==========================================================
    def monthly_check(self, now: Optional[datetime] = None) -> Dict:
        now = as_utc(now) or utcnow()
        results = {"plans_checked": 0, "penalties_applied": 0, "notifications_sent": 0,
                   "skipped": 0, "errors": 0, "stopped": False}

        plan_ids = [pid for (pid,) in db.session.query(InstallmentPlan.id).filter(
            InstallmentPlan.status == PlanStatus.LATE.value
        ).order_by(InstallmentPlan.id.asc()).all()]

        for plan_id in plan_ids:
            if self.stop_event.is_set():
                results["stopped"] = True
                break
            penalty = 0
            try:
                plan = InstallmentPlan.query.filter_by(id=plan_id).with_for_update().first()
                if plan is None or plan.status != PlanStatus.LATE.value:
                    db.session.commit()
                    continue
                results["plans_checked"] += 1

                last_check = as_utc(plan.last_late_check_at)
                if last_check and (last_check.year, last_check.month) == (now.year, now.month):
                    results["skipped"] += 1
                    db.session.commit()
                    continue

                cap = late_fee_cap(plan)
                current = plan.current_late_fee or 0
                delta = percent_of(plan.remaining_balance, plan_rate(plan), rounding=ROUND_HALF_UP)
                new_fee = min(current + delta, cap)
                if new_fee > current:
                    penalty = new_fee - current
                    plan.current_late_fee = new_fee
                    plan.months_late = (plan.months_late or 0) + 1
                    plan.last_late_check_at = now
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                results["errors"] += 1
                logger.error(f"Monthly penalty check failed for plan {plan_id}: {e}")
                continue

            if penalty:
                results["penalties_applied"] += 1
                if self.notifier.notify_monthly_penalty(plan, penalty, cap):
                    results["notifications_sent"] += 1

        self.last_results["monthly"] = results
        logger.info(f"Monthly installment check: checked={results['plans_checked']} "
                    f"penalties={results['penalties_applied']} skipped={results['skipped']}")
        return results

    # ==========================================================
    #                  REMINDERS
    # ==========================================================
    def send_payment_reminders(self, now: Optional[datetime] = None) -> Dict:
        """Remind holders of active plans about installments due soon."""
        now = as_utc(now) or utcnow()
        window_end = now + relativedelta(days=SettlementConfigHelper.reminder_window_days())
        results = {"plans_checked": 0, "reminders_sent": 0}

        plans = InstallmentPlan.query.filter(
            InstallmentPlan.status == PlanStatus.ACTIVE.value
        ).order_by(InstallmentPlan.id.asc()).all()

        for plan in plans:
            if self.stop_event.is_set():
                break
            results["plans_checked"] += 1

            last_reminder = as_utc(plan.last_reminder_at)
            if last_reminder and (last_reminder.year, last_reminder.month) == (now.year, now.month):
                continue

            upcoming = next((
                i for i in plan.installments
                if i.status != InstallmentStatus.COMPLETED.value
                and now <= as_utc(i.due_date) <= window_end
            ), None)
            if upcoming is None:
                continue

            if self.notifier.notify_payment_reminder(plan, upcoming):
                plan.last_reminder_at = now
                db.session.commit()
                results["reminders_sent"] += 1

        self.last_results["reminders"] = results
        logger.info(f"Payment reminders: checked={results['plans_checked']} sent={results['reminders_sent']}")
        return results

    # ==========================================================
    #                  PLAN CREATION & PAYMENTS
    # ==========================================================
    @staticmethod
    def create_plan(user_id: int, total_price: int, months: int,
                    currency: str = Currency.NAIRA.value,
                    total_shares: int = 0,
                    plan_kind: str = SourceKind.SHARE.value,
                    now: Optional[datetime] = None) -> InstallmentPlan:
        now = as_utc(now) or utcnow()

        if not User.query.get(user_id):
            raise PlanValidationError("User not found")
        if isinstance(total_price, bool) or not isinstance(total_price, int) or total_price <= 0:
            raise PlanValidationError("Total price must be a positive amount")
        if isinstance(months, bool) or not isinstance(months, int) or months < 1:
            raise PlanValidationError("Installment months must be at least 1")
        if months > total_price:
            raise PlanValidationError("Total price too small for that many installments")
        if not supported_currency(currency):
            raise PlanValidationError(f"Unsupported currency: {currency}")
        if plan_kind not in {k.value for k in SourceKind}:
            raise PlanValidationError(f"Unsupported plan kind: {plan_kind}")

        plan = InstallmentPlan(
            plan_ref=f"PLAN-{user_id}-{secrets.token_hex(6).upper()}",
            user_id=user_id,
            plan_kind=plan_kind,
            status=PlanStatus.PENDING.value,
            total_shares=total_shares,
            total_price=total_price,
            currency=currency,
            installment_months=months,
            late_fee_percentage=SettlementConfigHelper.late_fee_percentage(),
            current_late_fee=0,
            months_late=0,
            total_paid_amount=0,
        )

        base, remainder = divmod(total_price, months)
        for number in range(1, months + 1):
            plan.installments.append(Installment(
                installment_number=number,
                amount=base + (remainder if number == months else 0),
                paid_amount=0,
                due_date=now + relativedelta(months=number),
                late_fee=0,
                status=InstallmentStatus.PENDING.value if number == 1 else InstallmentStatus.UPCOMING.value,
            ))

        db.session.add(plan)
        db.session.commit()
        logger.info(f"Installment plan {plan.plan_ref} created for user {user_id}: "
                    f"{total_price} {currency} over {months} months")
        return plan

    def apply_payment(self, plan_id: int, amount: int, now: Optional[datetime] = None) -> InstallmentPlan:
        """Pay installments in order. Late fees are settled separately."""
        now = as_utc(now) or utcnow()
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PlanValidationError("Payment amount must be a positive amount")

        try:
            plan = InstallmentPlan.query.filter_by(id=plan_id).with_for_update().first()
            if plan is None:
                raise PlanNotFoundError(f"Installment plan {plan_id} not found")
            if plan.status not in OPEN_STATUSES:
                raise PlanValidationError(f"Plan {plan.plan_ref} is {plan.status}")
            if amount > plan.remaining_balance:
                raise PlanValidationError("Payment exceeds the remaining balance")

            left = amount
            for installment in plan.installments:
                if left <= 0:
                    break
                if installment.status == InstallmentStatus.COMPLETED.value:
                    continue
                paying = min(installment.remaining, left)
                installment.paid_amount = (installment.paid_amount or 0) + paying
                left -= paying
                if installment.remaining == 0:
                    installment.status = InstallmentStatus.COMPLETED.value
                    installment.paid_at = now

            plan.total_paid_amount = (plan.total_paid_amount or 0) + amount

            unpaid = [i for i in plan.installments if i.status != InstallmentStatus.COMPLETED.value]
            if not unpaid:
                plan.status = PlanStatus.COMPLETED.value
            else:
                if unpaid[0].status == InstallmentStatus.UPCOMING.value:
                    unpaid[0].status = InstallmentStatus.PENDING.value
                if plan.status == PlanStatus.PENDING.value:
                    plan.status = PlanStatus.ACTIVE.value
                if plan.status == PlanStatus.LATE.value and not self._past_grace(plan, now):
                    plan.status = PlanStatus.ACTIVE.value

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Payment of {amount} applied to plan {plan.plan_ref}; status {plan.status}")
        return plan

    @staticmethod
    def cancel_plan(plan_ref: str, user_id: Optional[int] = None, reason: Optional[str] = None,
                    now: Optional[datetime] = None) -> InstallmentPlan:
        """
        Close an open plan as `cancelled`.

        With `user_id` the holder is cancelling: the plan must be theirs and
        nothing may have been paid on it yet. Without it an admin is
        cancelling and any open plan qualifies.
        """
        now = as_utc(now) or utcnow()

        try:
            query = InstallmentPlan.query.filter_by(plan_ref=plan_ref)
            if user_id is not None:
                query = query.filter_by(user_id=user_id)
            plan = query.with_for_update().first()
            if plan is None:
                raise PlanNotFoundError(f"Installment plan {plan_ref} not found")
            if plan.status not in OPEN_STATUSES:
                raise PlanValidationError(f"Plan {plan.plan_ref} is already {plan.status}")
            if user_id is not None and (plan.total_paid_amount or 0) > 0:
                raise PlanValidationError("A plan with payments on it can only be cancelled by an admin")

            plan.status = PlanStatus.CANCELLED.value
            plan.cancelled_at = now
            default_reason = "Cancelled by user" if user_id is not None else "Cancelled by admin"
            plan.cancellation_reason = str(reason or default_reason)[:255]
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Installment plan {plan.plan_ref} cancelled: {plan.cancellation_reason}")
        return plan

    @staticmethod
    def get_plan(plan_ref: str, user_id: Optional[int] = None) -> InstallmentPlan:
        query = InstallmentPlan.query.filter_by(plan_ref=plan_ref)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        plan = query.first()
        if plan is None:
            raise PlanNotFoundError(f"Installment plan {plan_ref} not found")
        return plan
