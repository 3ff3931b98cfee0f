# settlement/ledger.py
"""
Per-user, per-currency withdrawal buckets.

Every bucket holds a non-negative integer amount in minor units. `add`,
`release` and `move` flush but never commit: they run inside the caller's
transaction so that the withdrawal status change and the bucket change are
committed (or rolled back) together.
"""
from typing import Dict, List, Optional
import logging

from extensions import db
from models import LedgerBucket, LedgerEvent, LedgerBucketName, Withdrawal, WithdrawalStatus
from settlement.exceptions import ConsistencyError

logger = logging.getLogger(__name__)

BUCKETS = tuple(b.value for b in LedgerBucketName)

# Withdrawal status -> bucket that carries its amount. Failed withdrawals carry nothing.
STATUS_BUCKETS = {
    WithdrawalStatus.PENDING.value: LedgerBucketName.PENDING.value,
    WithdrawalStatus.PROCESSING.value: LedgerBucketName.PROCESSING.value,
    WithdrawalStatus.PAID.value: LedgerBucketName.WITHDRAWN.value,
}


class LedgerManager:

    @staticmethod
    def _check_bucket(bucket: str):
        if bucket not in BUCKETS:
            raise ValueError(f"Unknown ledger bucket: {bucket}")

    @staticmethod
    def _bucket_for_update(user_id: int, currency: str) -> LedgerBucket:
        """Fetch the bucket row under a row lock, creating it on first use."""
        bucket = LedgerBucket.query.filter_by(
            user_id=user_id, currency=currency
        ).with_for_update().first()
        if bucket is not None:
            return bucket

        # A concurrent first insert fails the flush with IntegrityError and
        # rolls back the caller's whole transaction.
        bucket = LedgerBucket(
            user_id=user_id,
            currency=currency,
            pending_amt=0,
            processing_amt=0,
            withdrawn_amt=0,
        )
        db.session.add(bucket)
        db.session.flush()
        return bucket

    @staticmethod
    def _record_event(user_id, currency, kind, amount, from_bucket=None, to_bucket=None,
                      withdrawal_id=None, reference=None, description=None):
        db.session.add(LedgerEvent(
            user_id=user_id,
            currency=currency,
            kind=kind,
            from_bucket=from_bucket,
            to_bucket=to_bucket,
            amount=amount,
            withdrawal_id=withdrawal_id,
            reference=reference,
            description=description,
        ))

    @staticmethod
    def add(user_id: int, currency: str, bucket: str, amount: int,
            withdrawal_id: Optional[int] = None, reference: Optional[str] = None,
            description: Optional[str] = None) -> LedgerBucket:
        """Add `amount` (may be negative) to one bucket."""
        LedgerManager._check_bucket(bucket)
        amount = int(amount)

        row = LedgerManager._bucket_for_update(user_id, currency)
        current = getattr(row, bucket) or 0
        if current + amount < 0:
            raise ConsistencyError(
                f"Bucket {bucket} for user {user_id} ({currency}) would go negative: "
                f"{current} + {amount}",
                user_id=user_id, currency=currency, bucket=bucket,
            )

        setattr(row, bucket, current + amount)
        LedgerManager._record_event(
            user_id, currency, "add", amount, to_bucket=bucket,
            withdrawal_id=withdrawal_id, reference=reference, description=description,
        )
        db.session.flush()
        return row

    @staticmethod
    def release(user_id: int, currency: str, bucket: str, amount: int,
                withdrawal_id: Optional[int] = None, reference: Optional[str] = None,
                description: Optional[str] = None) -> LedgerBucket:
        """Take `amount` out of a bucket; the funds return to the user's available pool."""
        LedgerManager._check_bucket(bucket)
        amount = int(amount)
        if amount <= 0:
            raise ValueError("Release amount must be positive")

        row = LedgerManager._bucket_for_update(user_id, currency)
        current = getattr(row, bucket) or 0
        if current < amount:
            raise ConsistencyError(
                f"Cannot release {amount} from {bucket} for user {user_id} ({currency}): "
                f"only {current} held",
                user_id=user_id, currency=currency, bucket=bucket,
            )

        setattr(row, bucket, current - amount)
        LedgerManager._record_event(
            user_id, currency, "release", amount, from_bucket=bucket,
            withdrawal_id=withdrawal_id, reference=reference, description=description,
        )
        db.session.flush()
        return row

    @staticmethod
    def move(user_id: int, currency: str, from_bucket: str, to_bucket: str, amount: int,
             withdrawal_id: Optional[int] = None, reference: Optional[str] = None,
             description: Optional[str] = None) -> LedgerBucket:
        """Move `amount` between two buckets of the same user and currency."""
        LedgerManager._check_bucket(from_bucket)
        LedgerManager._check_bucket(to_bucket)
        if from_bucket == to_bucket:
            raise ValueError("Source and destination buckets must differ")
        amount = int(amount)
        if amount <= 0:
            raise ValueError("Move amount must be positive")

        row = LedgerManager._bucket_for_update(user_id, currency)
        source = getattr(row, from_bucket) or 0
        if source < amount:
            raise ConsistencyError(
                f"Cannot move {amount} from {from_bucket} to {to_bucket} for user {user_id} "
                f"({currency}): only {source} held",
                user_id=user_id, currency=currency, bucket=from_bucket,
            )

        setattr(row, from_bucket, source - amount)
        setattr(row, to_bucket, (getattr(row, to_bucket) or 0) + amount)
        LedgerManager._record_event(
            user_id, currency, "move", amount, from_bucket=from_bucket, to_bucket=to_bucket,
            withdrawal_id=withdrawal_id, reference=reference, description=description,
        )
        db.session.flush()
        return row

    # ==========================================================
    #                  READS
    # ==========================================================
    @staticmethod
    def lock_buckets(user_id: int, currency: str) -> LedgerBucket:
        """Row-lock a user's buckets for the rest of the current transaction."""
        return LedgerManager._bucket_for_update(user_id, currency)

    @staticmethod
    def balances(user_id: int, currency: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        query = LedgerBucket.query.filter_by(user_id=user_id)
        if currency:
            query = query.filter_by(currency=currency)
        return {row.currency: {b: getattr(row, b) for b in BUCKETS} for row in query.all()}

    @staticmethod
    def expected_buckets(user_id: int) -> Dict[str, Dict[str, int]]:
        """Bucket values implied by the user's withdrawals."""
        rows = db.session.query(
            Withdrawal.currency,
            Withdrawal.status,
            db.func.coalesce(db.func.sum(Withdrawal.amount), 0),
        ).filter(
            Withdrawal.user_id == user_id
        ).group_by(Withdrawal.currency, Withdrawal.status).all()

        expected: Dict[str, Dict[str, int]] = {}
        for currency, status, total in rows:
            buckets = expected.setdefault(currency, {b: 0 for b in BUCKETS})
            bucket = STATUS_BUCKETS.get(status)
            if bucket:
                buckets[bucket] += int(total)
        return expected


# ==========================================================
#                  AUDIT & REBUILD
# ==========================================================
class LedgerAuditor:
    """Compares buckets against withdrawals and repairs drift."""

    @staticmethod
    def _user_ids() -> List[int]:
        bucket_users = {uid for (uid,) in db.session.query(LedgerBucket.user_id).distinct()}
        withdrawal_users = {uid for (uid,) in db.session.query(Withdrawal.user_id).distinct()}
        return sorted(bucket_users | withdrawal_users)

    @staticmethod
    def check_user(user_id: int) -> List[Dict]:
        actual = LedgerManager.balances(user_id)
        expected = LedgerManager.expected_buckets(user_id)
        mismatches = []
        for currency in sorted(set(actual) | set(expected)):
            have = actual.get(currency, {b: 0 for b in BUCKETS})
            want = expected.get(currency, {b: 0 for b in BUCKETS})
            if have != want:
                mismatches.append({
                    "user_id": user_id,
                    "currency": currency,
                    "actual": have,
                    "expected": want,
                })
        return mismatches

    @staticmethod
    def audit_all() -> Dict:
        mismatches = []
        users = LedgerAuditor._user_ids()
        for user_id in users:
            mismatches.extend(LedgerAuditor.check_user(user_id))
        if mismatches:
            logger.warning(f"Ledger audit found {len(mismatches)} mismatched bucket sets")
        return {
            "users_checked": len(users),
            "mismatches": mismatches,
            "consistent": not mismatches,
        }

    @staticmethod
    def rebuild_user_buckets(user_id: int) -> bool:
        """Rewrite a user's buckets from their withdrawals. Returns True if anything changed."""
        try:
            currencies = {c for (c,) in db.session.query(LedgerBucket.currency).filter_by(
                user_id=user_id).distinct()}
            currencies |= {c for (c,) in db.session.query(Withdrawal.currency).filter_by(
                user_id=user_id).distinct()}

            # lock first: transitions take the same row lock before touching buckets
            rows = {currency: LedgerManager.lock_buckets(user_id, currency)
                    for currency in sorted(currencies)}
            expected = LedgerManager.expected_buckets(user_id)

            changed = False
            for currency, row in rows.items():
                want = expected.get(currency, {b: 0 for b in BUCKETS})
                for bucket in BUCKETS:
                    have = getattr(row, bucket) or 0
                    if have != want[bucket]:
                        setattr(row, bucket, want[bucket])
                        LedgerManager._record_event(
                            user_id, currency, "rebuild", want[bucket] - have, to_bucket=bucket,
                            description="Bucket rebuilt from withdrawals",
                        )
                        changed = True

            db.session.commit()
            if changed:
                logger.warning(f"Ledger buckets rebuilt for user {user_id}")
            return changed
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def rebuild_all() -> Dict:
        stats = {"users_checked": 0, "users_rebuilt": 0, "errors": 0}
        for user_id in LedgerAuditor._user_ids():
            stats["users_checked"] += 1
            try:
                if LedgerAuditor.rebuild_user_buckets(user_id):
                    stats["users_rebuilt"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Failed to rebuild buckets for user {user_id}: {e}")
        return stats
