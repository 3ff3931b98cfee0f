# settlement/withdrawal_state.py
"""
Withdrawal lifecycle: pending -> processing -> paid | failed, with the
provider allowed to skip `processing`. Every transition is a conditional
update guarded by the expected current status, so two workers can never
advance the same withdrawal twice.
"""
from typing import NamedTuple, Optional, Dict
import uuid
import logging

from sqlalchemy.exc import IntegrityError

from extensions import db
from logger import settlement_logger
from models import (User, Withdrawal, WithdrawalStatus, LedgerBucketName, PaymentMethod,
                    ReferralAggregate)
from settlement.clock import utcnow
from settlement.config import SettlementConfigHelper
from settlement.exceptions import (ConsistencyError, InvalidTransitionError,
                                   WithdrawalValidationError, DuplicateReferenceError,
                                   UniquenessConflict)
from settlement.gateway import GatewayResult, GatewayStatus
from settlement.ledger import LedgerManager
from settlement.money import supported_currency
from settlement.notifications import WithdrawalNotifier
from settlement.receipts import generate_withdrawal_receipt

logger = logging.getLogger(__name__)

PENDING = WithdrawalStatus.PENDING.value
PROCESSING = WithdrawalStatus.PROCESSING.value
PAID = WithdrawalStatus.PAID.value
FAILED = WithdrawalStatus.FAILED.value

PENDING_BUCKET = LedgerBucketName.PENDING.value
PROCESSING_BUCKET = LedgerBucketName.PROCESSING.value
WITHDRAWN_BUCKET = LedgerBucketName.WITHDRAWN.value

# (current status, gateway status) -> (next status, ledger effect)
# Ledger effect is ("move", from, to) or ("release", bucket).
TRANSITIONS = {
    (PENDING, GatewayStatus.SUCCESSFUL): (PAID, ("move", PENDING_BUCKET, WITHDRAWN_BUCKET)),
    (PENDING, GatewayStatus.PROCESSING): (PROCESSING, ("move", PENDING_BUCKET, PROCESSING_BUCKET)),
    (PENDING, GatewayStatus.FAILED): (FAILED, ("release", PENDING_BUCKET)),
    (PENDING, GatewayStatus.DECLINED): (FAILED, ("release", PENDING_BUCKET)),
    (PROCESSING, GatewayStatus.SUCCESSFUL): (PAID, ("move", PROCESSING_BUCKET, WITHDRAWN_BUCKET)),
    (PROCESSING, GatewayStatus.FAILED): (FAILED, ("release", PROCESSING_BUCKET)),
    (PROCESSING, GatewayStatus.DECLINED): (FAILED, ("release", PROCESSING_BUCKET)),
}


class TransitionOutcome(NamedTuple):
    withdrawal_id: int
    previous_status: str
    new_status: str
    changed: bool


# ==========================================================
#                  STATE MACHINE
# ==========================================================
class WithdrawalStateMachine:

    def __init__(self, notifier=WithdrawalNotifier, receipt_generator=generate_withdrawal_receipt):
        self.notifier = notifier
        self.receipt_generator = receipt_generator

    @staticmethod
    def next_state(current_status: str, gateway_status: str):
        """Return (next_status, ledger_effect) or None when the pair is a no-op."""
        return TRANSITIONS.get((current_status, gateway_status))

    def advance(self, withdrawal_id: int, result: GatewayResult) -> TransitionOutcome:
        withdrawal = Withdrawal.query.get(withdrawal_id)
        if withdrawal is None:
            raise InvalidTransitionError(f"Withdrawal {withdrawal_id} not found")

        current = withdrawal.status
        unchanged = TransitionOutcome(withdrawal_id, current, current, False)

        if withdrawal.needs_review:
            logger.debug(f"Withdrawal {withdrawal_id} is flagged for review, not advancing")
            return unchanged

        edge = self.next_state(current, result.status)
        if edge is None:
            return unchanged

        new_status, effect = edge
        now = utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status == PROCESSING:
            values["processing_at"] = now
        elif new_status == PAID:
            values["paid_at"] = now
            if result.provider_ref:
                values["provider_reference"] = result.provider_ref
        elif new_status == FAILED:
            values["failed_at"] = result.failed_at or now
            values["failure_reason"] = (result.failure_reason or "Transaction failed")[:255]

        user_id = withdrawal.user_id
        currency = withdrawal.currency
        amount = withdrawal.amount
        reference = withdrawal.client_reference

        try:
            updated = Withdrawal.query.filter(
                Withdrawal.id == withdrawal_id,
                Withdrawal.status == current,
                Withdrawal.needs_review.is_(False),
            ).update(values, synchronize_session=False)

            if updated == 0:
                # another worker moved it first
                db.session.rollback()
                logger.info(f"Withdrawal {withdrawal_id} left {current} concurrently, skipping")
                return unchanged

            description = f"Withdrawal {reference}: {current} -> {new_status}"
            if effect[0] == "move":
                LedgerManager.move(user_id, currency, effect[1], effect[2], amount,
                                   withdrawal_id=withdrawal_id, reference=reference,
                                   description=description)
            else:
                LedgerManager.release(user_id, currency, effect[1], amount,
                                      withdrawal_id=withdrawal_id, reference=reference,
                                      description=description)

            db.session.commit()

        except ConsistencyError as e:
            db.session.rollback()
            self.flag_for_review(withdrawal_id, str(e))
            settlement_logger.critical(
                f"RECONCILIATION ALERT: withdrawal {withdrawal_id} ({reference}) could not move "
                f"{current} -> {new_status}: {e}"
            )
            raise
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Withdrawal {withdrawal_id} ({reference}) {current} -> {new_status}")
        self._after_commit(withdrawal_id, new_status)
        return TransitionOutcome(withdrawal_id, current, new_status, True)

    @staticmethod
    def flag_for_review(withdrawal_id: int, note: str):
        """Exclude a withdrawal from automatic transitions until an operator clears it."""
        try:
            Withdrawal.query.filter(Withdrawal.id == withdrawal_id).update(
                {"needs_review": True, "review_note": note[:255], "updated_at": utcnow()},
                synchronize_session=False,
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            settlement_logger.critical(f"Could not flag withdrawal {withdrawal_id} for review: {e}")

    @staticmethod
    def clear_review_flag(withdrawal_id: int) -> bool:
        withdrawal = Withdrawal.query.get(withdrawal_id)
        if withdrawal is None or not withdrawal.needs_review:
            return False
        withdrawal.needs_review = False
        withdrawal.review_note = None
        db.session.commit()
        logger.info(f"Review flag cleared on withdrawal {withdrawal_id}")
        return True

    def _after_commit(self, withdrawal_id: int, new_status: str):
        """Receipts and notifications. Failures are logged and never undo the transition."""
        withdrawal = Withdrawal.query.get(withdrawal_id)
        if withdrawal is None:
            return

        if new_status == PAID:
            try:
                path = self.receipt_generator(withdrawal)
                if path:
                    withdrawal.receipt_path = path
                    db.session.commit()
            except Exception as e:
                db.session.rollback()
                logger.error(f"Receipt generation failed for withdrawal {withdrawal_id}: {e}")
            try:
                self.notifier.notify_success(withdrawal)
            except Exception as e:
                logger.error(f"Success notification failed for withdrawal {withdrawal_id}: {e}")

        elif new_status == FAILED:
            try:
                self.notifier.notify_failure(withdrawal)
            except Exception as e:
                logger.error(f"Failure notification failed for withdrawal {withdrawal_id}: {e}")


# ==========================================================
#                  WITHDRAWAL RECORD MANAGER
# ==========================================================
REQUIRED_DETAILS = {
    PaymentMethod.BANK.value: ("accountNumber", "accountName"),
    PaymentMethod.CRYPTO.value: ("walletAddress", "cryptoType"),
    PaymentMethod.MOBILE_MONEY.value: ("mobileNumber", "mobileProvider"),
}


class WithdrawalRecordManager:

    @staticmethod
    def generate_client_reference(user_id: int) -> str:
        return f"WD-{user_id}-{uuid.uuid4().hex[:12].upper()}"

    @staticmethod
    def available_balance(user_id: int, currency: str) -> int:
        """Commission earnings not yet committed to a withdrawal bucket."""
        aggregate = ReferralAggregate.query.filter_by(user_id=user_id, currency=currency).first()
        earnings = aggregate.total_earnings if aggregate else 0
        buckets = LedgerManager.balances(user_id, currency).get(currency, {})
        held = sum(buckets.values()) if buckets else 0
        return earnings - held

    @staticmethod
    def validate_request(user: Optional[User], amount, currency: str, payment_method: str,
                         payment_details: Optional[Dict]):
        if user is None:
            raise WithdrawalValidationError("User not found")
        if not user.is_active or user.is_banned:
            raise WithdrawalValidationError("Account is not allowed to withdraw")
        if not supported_currency(currency):
            raise WithdrawalValidationError(f"Unsupported currency: {currency}")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise WithdrawalValidationError("Please provide a valid withdrawal amount")

        limits = SettlementConfigHelper.withdrawal_limits()
        if limits["min"] and amount < limits["min"]:
            raise WithdrawalValidationError(f"Minimum withdrawal amount is {limits['min']}")
        if limits["max"] and amount > limits["max"]:
            raise WithdrawalValidationError(f"Maximum withdrawal amount is {limits['max']}")

        required = REQUIRED_DETAILS.get(payment_method)
        if required is None:
            raise WithdrawalValidationError(f"Unsupported payment method: {payment_method}")
        details = payment_details or {}
        missing = [key for key in required if not details.get(key)]
        if missing:
            raise WithdrawalValidationError(f"Missing payment details: {', '.join(missing)}")

    @staticmethod
    def submit_withdrawal(user_id: int, amount: int, currency: str, payment_method: str,
                          payment_details: Optional[Dict] = None,
                          client_reference: Optional[str] = None) -> Withdrawal:
        """
        Create a pending withdrawal and hold its amount in the pending bucket,
        both in one transaction.
        """
        user = User.query.get(user_id)
        WithdrawalRecordManager.validate_request(user, amount, currency, payment_method, payment_details)

        client_reference = client_reference or WithdrawalRecordManager.generate_client_reference(user_id)
        if Withdrawal.query.filter_by(client_reference=client_reference).first():
            raise DuplicateReferenceError(f"Client reference {client_reference} already exists")

        try:
            LedgerManager.lock_buckets(user_id, currency)

            in_flight = Withdrawal.query.filter(
                Withdrawal.user_id == user_id,
                Withdrawal.status.in_([PENDING, PROCESSING]),
            ).first()
            if in_flight:
                raise WithdrawalValidationError(
                    f"You have a {in_flight.status} withdrawal in progress. "
                    "Please wait for it to complete before making another withdrawal request."
                )

            available = WithdrawalRecordManager.available_balance(user_id, currency)
            if available < amount:
                raise WithdrawalValidationError("Insufficient available balance for this withdrawal")

            withdrawal = Withdrawal(
                user_id=user_id,
                amount=amount,
                currency=currency,
                payment_method=payment_method,
                payment_details=dict(payment_details or {}),
                client_reference=client_reference,
                status=PENDING,
            )
            db.session.add(withdrawal)
            db.session.flush()

            LedgerManager.add(user_id, currency, PENDING_BUCKET, amount,
                              withdrawal_id=withdrawal.id, reference=client_reference,
                              description=f"Withdrawal {client_reference} requested")
            db.session.commit()

        except IntegrityError as e:
            db.session.rollback()
            if Withdrawal.query.filter_by(client_reference=client_reference).first():
                raise DuplicateReferenceError(f"Client reference {client_reference} already exists") from e
            # lost the race to create the ledger bucket row; nothing was written
            logger.warning(f"Withdrawal {client_reference} for user {user_id} hit a concurrent insert: {e.orig}")
            raise UniquenessConflict("Another update to your balance is in progress, please retry") from e
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Withdrawal {withdrawal.id} ({client_reference}) created for user {user_id}: "
                    f"{amount} {currency}")
        return withdrawal


# ==========================================================
#                  QUERY HELPERS
# ==========================================================
class WithdrawalQueryHelper:
    @staticmethod
    def get_user_withdrawals(user_id: int, limit: int = 10):
        """Get user's withdrawal history"""
        return Withdrawal.query.filter_by(user_id=user_id)\
                               .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())\
                               .limit(limit)\
                               .all()

    @staticmethod
    def get_withdrawal(withdrawal_id: int, user_id: Optional[int] = None):
        query = Withdrawal.query.filter_by(id=withdrawal_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.first()

    @staticmethod
    def get_withdrawal_by_ref(client_reference: str, user_id: Optional[int] = None):
        """Find withdrawal by client reference"""
        query = Withdrawal.query.filter_by(client_reference=client_reference)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.first()
