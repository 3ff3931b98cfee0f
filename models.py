# models.py - Flask-SQLAlchemy models for the settlement engine
import enum
from sqlalchemy import UniqueConstraint, Index, CheckConstraint
from sqlalchemy.orm import validates
from flask_login import UserMixin
from extensions import db

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class Currency(enum.Enum):
    NAIRA = "naira"
    USDT = "usdt"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceKind(enum.Enum):
    SHARE = "share"
    COFOUNDER = "cofounder"


class WithdrawalStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"

    @classmethod
    def terminal(cls):
        return {cls.PAID.value, cls.FAILED.value}


class PaymentMethod(enum.Enum):
    BANK = "bank"
    CRYPTO = "crypto"
    MOBILE_MONEY = "mobile_money"


class LedgerBucketName(enum.Enum):
    PENDING = "pending_amt"
    PROCESSING = "processing_amt"
    WITHDRAWN = "withdrawn_amt"


class PlanStatus(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    LATE = "late"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InstallmentStatus(enum.Enum):
    UPCOMING = "upcoming"
    PENDING = "pending"
    OVERDUE = "overdue"
    COMPLETED = "completed"


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=db.func.now(),
                           onupdate=db.func.now())

# ===========================================================
# USER MODELS
# ===========================================================

class User(db.Model, BaseMixin, UserMixin):
    """Platform user. The referral graph is keyed by handle, not by id."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    handle = db.Column(db.String(80), nullable=True)
    handle_lower = db.Column(db.String(80), unique=True, nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=True)
    full_name = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(20), nullable=True, default="user", index=True)
    referred_by = db.Column(db.String(80), nullable=True, index=True)  # handle of the referrer
    is_active = db.Column(db.Boolean, default=True)
    is_banned = db.Column(db.Boolean, default=False)

    withdrawals = db.relationship('Withdrawal', back_populates='user', lazy='dynamic')
    share_transactions = db.relationship('ShareTransaction', back_populates='user', lazy='dynamic')
    installment_plans = db.relationship('InstallmentPlan', back_populates='user', lazy='dynamic')

    @validates("handle")
    def _sync_handle_lower(self, key, value):
        self.handle_lower = value.strip().lower() if value else None
        return value.strip() if value else value

    @property
    def display_name(self):
        return self.full_name or self.handle or f"user-{self.id}"

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "handle": self.handle,
            "email": self.email,
            "full_name": self.full_name,
            "referred_by": self.referred_by,
            "role": self.role,
        }

    def __repr__(self):
        return f"<User {self.id} {self.handle}>"


# ===========================================================
# SHARE PURCHASES
# ===========================================================

class ShareTransaction(db.Model, BaseMixin):
    """A share or co-founder share purchase. Immutable once completed."""
    __tablename__ = 'share_transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units
    currency = db.Column(db.String(10), nullable=False, default=Currency.NAIRA.value)
    source_kind = db.Column(db.String(20), nullable=False, default=SourceKind.SHARE.value)
    source_ref = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING.value)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship('User', back_populates='share_transactions')

    __table_args__ = (
        Index('idx_share_tx_user_status', 'user_id', 'status'),
        CheckConstraint('amount >= 0', name='chk_share_tx_amount'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "source_kind": self.source_kind,
            "source_ref": self.source_ref,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# ===========================================================
# REFERRALS
# ===========================================================

class Commission(db.Model, BaseMixin):
    __tablename__ = 'commissions'

    id = db.Column(db.Integer, primary_key=True)
    beneficiary_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    referred_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    generation = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units
    currency = db.Column(db.String(10), nullable=False, default=Currency.NAIRA.value)
    source_ref = db.Column(db.String(64), nullable=False)
    source_kind = db.Column(db.String(20), nullable=False, default=SourceKind.SHARE.value)
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.COMPLETED.value)

    beneficiary = db.relationship('User', foreign_keys=[beneficiary_id])
    referred_user = db.relationship('User', foreign_keys=[referred_user_id])

    __table_args__ = (
        UniqueConstraint('beneficiary_id', 'referred_user_id', 'generation', 'source_ref',
                         name='uq_commission_key'),
        CheckConstraint('generation >= 1 AND generation <= 3', name='chk_commission_generation'),
        CheckConstraint('amount >= 0', name='chk_commission_amount'),
        Index('idx_commission_beneficiary_status', 'beneficiary_id', 'status'),
    )

    @property
    def key(self):
        return (self.beneficiary_id, self.referred_user_id, self.generation, self.source_ref)

    def to_dict(self):
        return {
            "id": self.id,
            "beneficiary_id": self.beneficiary_id,
            "referred_user_id": self.referred_user_id,
            "generation": self.generation,
            "amount": self.amount,
            "currency": self.currency,
            "source_ref": self.source_ref,
            "source_kind": self.source_kind,
            "status": self.status,
        }


class ReferralAggregate(db.Model, BaseMixin):
    """Derived per-user, per-currency cache over completed commissions."""
    __tablename__ = 'referral_aggregates'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    currency = db.Column(db.String(10), nullable=False, default=Currency.NAIRA.value)
    referred_users = db.Column(db.Integer, nullable=False, default=0)
    total_earnings = db.Column(db.BigInteger, nullable=False, default=0)
    gen1_count = db.Column(db.Integer, nullable=False, default=0)
    gen1_earnings = db.Column(db.BigInteger, nullable=False, default=0)
    gen2_count = db.Column(db.Integer, nullable=False, default=0)
    gen2_earnings = db.Column(db.BigInteger, nullable=False, default=0)
    gen3_count = db.Column(db.Integer, nullable=False, default=0)
    gen3_earnings = db.Column(db.BigInteger, nullable=False, default=0)
    last_recomputed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'currency', name='uq_referral_aggregate_user_currency'),
    )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "referred_users": self.referred_users,
            "total_earnings": self.total_earnings,
            "generation1": {"count": self.gen1_count, "earnings": self.gen1_earnings},
            "generation2": {"count": self.gen2_count, "earnings": self.gen2_earnings},
            "generation3": {"count": self.gen3_count, "earnings": self.gen3_earnings},
        }


# ===========================================================
# WITHDRAWALS & LEDGER
# ===========================================================

class Withdrawal(db.Model, BaseMixin):
    __tablename__ = 'withdrawals'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units
    currency = db.Column(db.String(10), nullable=False, default=Currency.NAIRA.value)
    payment_method = db.Column(db.String(20), nullable=False, default=PaymentMethod.BANK.value)
    payment_details = db.Column(db.JSON, nullable=False, default=dict)
    client_reference = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    provider_reference = db.Column(db.String(128), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    processing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    needs_review = db.Column(db.Boolean, nullable=False, default=False)
    review_note = db.Column(db.String(255), nullable=True)
    receipt_path = db.Column(db.String(255), nullable=True)

    user = db.relationship('User', back_populates='withdrawals')

    __table_args__ = (
        Index('idx_withdrawal_status_review', 'status', 'needs_review'),
        CheckConstraint('amount > 0', name='chk_withdrawal_amount'),
    )

    @property
    def is_terminal(self):
        return self.status in WithdrawalStatus.terminal()

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "payment_details": self.payment_details,
            "client_reference": self.client_reference,
            "status": self.status,
            "provider_reference": self.provider_reference,
            "failure_reason": self.failure_reason,
            "needs_review": self.needs_review,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processing_at": self.processing_at.isoformat() if self.processing_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }


class LedgerBucket(db.Model, BaseMixin):
    """Per-user, per-currency withdrawal buckets in minor units."""
    __tablename__ = 'ledger_buckets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    pending_amt = db.Column(db.BigInteger, nullable=False, default=0)
    processing_amt = db.Column(db.BigInteger, nullable=False, default=0)
    withdrawn_amt = db.Column(db.BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('user_id', 'currency', name='uq_ledger_bucket_user_currency'),
        CheckConstraint('pending_amt >= 0', name='chk_bucket_pending'),
        CheckConstraint('processing_amt >= 0', name='chk_bucket_processing'),
        CheckConstraint('withdrawn_amt >= 0', name='chk_bucket_withdrawn'),
    )

    def to_dict(self):
        return {
            "currency": self.currency,
            "pending_amt": self.pending_amt,
            "processing_amt": self.processing_amt,
            "withdrawn_amt": self.withdrawn_amt,
        }


class LedgerEvent(db.Model, BaseMixin):
    """Append-only journal of bucket mutations."""
    __tablename__ = 'ledger_events'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    currency = db.Column(db.String(10), nullable=False)
    kind = db.Column(db.String(20), nullable=False)  # add | move | release | rebuild
    from_bucket = db.Column(db.String(20), nullable=True)
    to_bucket = db.Column(db.String(20), nullable=True)
    amount = db.Column(db.BigInteger, nullable=False)
    withdrawal_id = db.Column(db.Integer, db.ForeignKey('withdrawals.id'), nullable=True, index=True)
    reference = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)


# ===========================================================
# INSTALLMENTS
# ===========================================================

class InstallmentPlan(db.Model, BaseMixin):
    __tablename__ = 'installment_plans'

    id = db.Column(db.Integer, primary_key=True)
    plan_ref = db.Column(db.String(64), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    plan_kind = db.Column(db.String(20), nullable=False, default=SourceKind.SHARE.value)
    status = db.Column(db.String(20), nullable=False, default=PlanStatus.PENDING.value, index=True)
    total_shares = db.Column(db.Integer, nullable=False, default=0)
    total_price = db.Column(db.BigInteger, nullable=False)  # minor units
    currency = db.Column(db.String(10), nullable=False, default=Currency.NAIRA.value)
    installment_months = db.Column(db.Integer, nullable=False, default=1)
    late_fee_percentage = db.Column(db.Numeric(6, 3), nullable=False, default=0.5)
    current_late_fee = db.Column(db.BigInteger, nullable=False, default=0)
    months_late = db.Column(db.Integer, nullable=False, default=0)
    total_paid_amount = db.Column(db.BigInteger, nullable=False, default=0)
    last_late_check_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_reminder_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship('User', back_populates='installment_plans')
    installments = db.relationship('Installment', back_populates='plan',
                                   order_by='Installment.installment_number',
                                   cascade="all,delete-orphan")

    __table_args__ = (
        CheckConstraint('total_price > 0', name='chk_plan_total_price'),
        CheckConstraint('current_late_fee >= 0', name='chk_plan_late_fee'),
    )

    @property
    def remaining_balance(self):
        return max(self.total_price - (self.total_paid_amount or 0), 0)

    def to_dict(self, include_installments=True):
        data = {
            "id": self.id,
            "plan_ref": self.plan_ref,
            "user_id": self.user_id,
            "plan_kind": self.plan_kind,
            "status": self.status,
            "total_shares": self.total_shares,
            "total_price": self.total_price,
            "currency": self.currency,
            "installment_months": self.installment_months,
            "late_fee_percentage": str(self.late_fee_percentage),
            "current_late_fee": self.current_late_fee,
            "months_late": self.months_late,
            "total_paid_amount": self.total_paid_amount,
            "remaining_balance": self.remaining_balance,
            "cancellation_reason": self.cancellation_reason,
        }
        if include_installments:
            data["installments"] = [i.to_dict() for i in self.installments]
        return data


class Installment(db.Model, BaseMixin):
    __tablename__ = 'installments'

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('installment_plans.id', ondelete='CASCADE'),
                        nullable=False, index=True)
    installment_number = db.Column(db.Integer, nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    paid_amount = db.Column(db.BigInteger, nullable=False, default=0)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    late_fee = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=InstallmentStatus.UPCOMING.value)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    plan = db.relationship('InstallmentPlan', back_populates='installments')

    __table_args__ = (
        UniqueConstraint('plan_id', 'installment_number', name='uq_installment_number'),
        CheckConstraint('late_fee >= 0', name='chk_installment_late_fee'),
    )

    @property
    def remaining(self):
        return max(self.amount - (self.paid_amount or 0), 0)

    def to_dict(self):
        return {
            "installment_number": self.installment_number,
            "amount": self.amount,
            "paid_amount": self.paid_amount,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "late_fee": self.late_fee,
            "status": self.status,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }
