# settlement/notifications.py
from typing import List, Optional
import logging

from flask import render_template
from flask_mail import Message

from extensions import mail
from models import User, Withdrawal, InstallmentPlan, Installment
from settlement.exceptions import NotificationFailure
from settlement.money import format_amount

logger = logging.getLogger(__name__)


# ==========================================================
#                  NOTIFICATION SINK
# ==========================================================
class NotificationSink:
    """Best-effort e-mail delivery. Never raises; returns whether the mail went out."""

    @staticmethod
    def _deliver(recipient: str, subject: str, html_body: str):
        try:
            mail.send(Message(subject=subject, recipients=[recipient], html=html_body))
        except Exception as e:
            raise NotificationFailure(f"Mail delivery to {recipient} failed: {e}") from e

    def send(self, recipient: Optional[str], subject: str, html_body: str) -> bool:
        if not recipient:
            logger.info(f"No recipient for notification '{subject}', skipping")
            return False
        try:
            self._deliver(recipient, subject, html_body)
        except NotificationFailure as e:
            logger.error(f"Notification '{subject}' not sent: {e}")
            return False
        logger.info(f"Notification '{subject}' sent to {recipient}")
        return True


notification_sink = NotificationSink()


# ==========================================================
#                  WITHDRAWAL NOTIFICATIONS
# ==========================================================
class WithdrawalNotifier:
    @staticmethod
    def notify_success(withdrawal: Withdrawal) -> bool:
        try:
            user = User.query.get(withdrawal.user_id)
            if not user:
                return False
            html = render_template(
                "emails/withdrawal_successful.html",
                user=user,
                withdrawal=withdrawal,
                amount=format_amount(withdrawal.amount, withdrawal.currency),
            )
            return notification_sink.send(user.email, "Withdrawal Successful", html)
        except Exception as e:
            logger.error(f"Success notification for withdrawal {withdrawal.id} failed: {e}")
            return False

    @staticmethod
    def notify_failure(withdrawal: Withdrawal) -> bool:
        try:
            user = User.query.get(withdrawal.user_id)
            if not user:
                return False
            html = render_template(
                "emails/withdrawal_failed.html",
                user=user,
                withdrawal=withdrawal,
                amount=format_amount(withdrawal.amount, withdrawal.currency),
                reason=withdrawal.failure_reason or "Transaction failed",
            )
            return notification_sink.send(user.email, "Withdrawal Failed", html)
        except Exception as e:
            logger.error(f"Failure notification for withdrawal {withdrawal.id} failed: {e}")
            return False


# ==========================================================
#                  INSTALLMENT NOTIFICATIONS
# ==========================================================
class PlanNotifier:
    @staticmethod
    def notify_late_payment(plan: InstallmentPlan, overdue: List[Installment], cap: int) -> bool:
        try:
            user = User.query.get(plan.user_id)
            if not user:
                return False
            overdue_amount = sum(i.remaining for i in overdue)
            late_fees = sum(i.late_fee for i in overdue)
            html = render_template(
                "emails/installment_late.html",
                user=user,
                plan=plan,
                overdue_count=len(overdue),
                overdue_amount=format_amount(overdue_amount, plan.currency),
                late_fees=format_amount(late_fees, plan.currency),
                total_due=format_amount(overdue_amount + late_fees, plan.currency),
                cap=format_amount(cap, plan.currency),
            )
            return notification_sink.send(user.email, "Installment Payment Overdue - Late Fee Applied", html)
        except Exception as e:
            logger.error(f"Late payment notification for plan {plan.plan_ref} failed: {e}")
            return False

    @staticmethod
    def notify_monthly_penalty(plan: InstallmentPlan, penalty: int, cap: int) -> bool:
        try:
            user = User.query.get(plan.user_id)
            if not user:
                return False
            html = render_template(
                "emails/installment_monthly_penalty.html",
                user=user,
                plan=plan,
                penalty=format_amount(penalty, plan.currency),
                total_late_fees=format_amount(plan.current_late_fee, plan.currency),
                remaining_balance=format_amount(plan.remaining_balance, plan.currency),
                total_due=format_amount(plan.remaining_balance + plan.current_late_fee, plan.currency),
                cap=format_amount(cap, plan.currency),
            )
            return notification_sink.send(user.email, "Installment Plan - Monthly Late Fee Applied", html)
        except Exception as e:
            logger.error(f"Monthly penalty notification for plan {plan.plan_ref} failed: {e}")
            return False

    @staticmethod
    def notify_payment_reminder(plan: InstallmentPlan, installment: Installment) -> bool:
        try:
            user = User.query.get(plan.user_id)
            if not user:
                return False
            html = render_template(
                "emails/installment_reminder.html",
                user=user,
                plan=plan,
                installment=installment,
                amount_due=format_amount(installment.remaining, plan.currency),
            )
            return notification_sink.send(user.email, "Installment Payment Reminder", html)
        except Exception as e:
            logger.error(f"Payment reminder for plan {plan.plan_ref} failed: {e}")
            return False


class AdminNotifier:
    @staticmethod
    def weekly_summary(recipient: Optional[str], stats: dict, penalty_results: dict) -> bool:
        if not recipient:
            logger.warning("ADMIN_EMAIL not configured, weekly installment summary not sent")
            return False
        try:
            html = render_template(
                "emails/admin_weekly_summary.html",
                stats=stats,
                penalty_results=penalty_results,
            )
            return notification_sink.send(recipient, "Weekly Installment Plan Summary", html)
        except Exception as e:
            logger.error(f"Weekly admin summary failed: {e}")
            return False
