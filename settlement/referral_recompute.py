# settlement/referral_recompute.py
"""
Three-generation referral commissions.

The batch job rebuilds every referrer's commissions from completed share
transactions: per beneficiary it deletes the existing rows and inserts the
recomputed set inside one transaction, then refreshes the beneficiary's
aggregates. Running it twice in a row leaves the same rows behind.

The live hook writes the commissions of a single transaction as it
completes; an existing row under the same
(beneficiary, referred user, generation, source) key counts as success.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import threading
import logging

from sqlalchemy import distinct
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (User, ShareTransaction, Commission, ReferralAggregate,
                    TransactionStatus, SourceKind, Currency)
from settlement.clock import utcnow
from settlement.config import SettlementConfigHelper
from settlement.exceptions import InvalidTransitionError, UniquenessConflict
from settlement.money import percent_of

logger = logging.getLogger(__name__)

COMPLETED = TransactionStatus.COMPLETED.value
MAX_GENERATION = SettlementConfigHelper.MAX_GENERATION


# ==========================================================
#                  REFERRAL GRAPH
# ==========================================================
class ReferralGraph:
    """Adjacency table handle -> direct referrals, built once per run."""

    def __init__(self, users: List[User]):
        self.by_handle: Dict[str, User] = {}
        self.children: Dict[str, List[User]] = defaultdict(list)
        self.self_referrals: List[int] = []
        self.dangling: List[int] = []

        for user in users:
            if user.handle_lower:
                self.by_handle[user.handle_lower] = user

        for user in sorted(users, key=lambda u: u.id):
            if not user.referred_by:
                continue
            parent = user.referred_by.strip().lower()
            if not parent:
                continue
            if user.handle_lower and parent == user.handle_lower:
                logger.warning(f"User {user.id} ({user.handle}) refers to themselves, ignoring referral")
                self.self_referrals.append(user.id)
                continue
            if parent not in self.by_handle:
                self.dangling.append(user.id)
                continue
            self.children[parent].append(user)

    @classmethod
    def load(cls):
        return cls(User.query.all())

    def direct_referrals(self, user: User) -> List[User]:
        if not user.handle_lower:
            return []
        return self.children.get(user.handle_lower, [])

    def downline(self, user: User) -> List[Tuple[int, User]]:
        """(generation, user) pairs for generations 1..3 below `user`."""
        result = []
        visited = {user.id}
        frontier = [user]
        for generation in range(1, MAX_GENERATION + 1):
            next_frontier = []
            for parent in frontier:
                for child in self.direct_referrals(parent):
                    if child.id in visited:
                        # malformed cyclic data
                        continue
                    visited.add(child.id)
                    next_frontier.append(child)
                    result.append((generation, child))
            if not next_frontier:
                break
            frontier = next_frontier
        return result


def upline(user: User) -> List[Tuple[int, User]]:
    """(generation, referrer) pairs above `user`, following referred_by handles."""
    chain = []
    visited = {user.id}
    current = user
    for generation in range(1, MAX_GENERATION + 1):
        if not current.referred_by:
            break
        parent_handle = current.referred_by.strip().lower()
        if current.handle_lower and parent_handle == current.handle_lower:
            logger.warning(f"User {current.id} ({current.handle}) refers to themselves, chain ends")
            break
        parent = User.query.filter_by(handle_lower=parent_handle).first()
        if parent is None or parent.id in visited:
            break
        visited.add(parent.id)
        chain.append((generation, parent))
        current = parent
    return chain


# ==========================================================
#                  AGGREGATES
# ==========================================================
def refresh_aggregates(user_id: int, referred_users: Optional[int] = None):
    """
    Rewrite a beneficiary's ReferralAggregate rows from its completed
    commissions. Caller commits.
    """
    db.session.flush()

    if referred_users is None:
        user = User.query.get(user_id)
        referred_users = 0
        if user and user.handle_lower:
            referred_users = User.query.filter(
                db.func.lower(User.referred_by) == user.handle_lower,
                User.id != user.id,
            ).count()

    rows = db.session.query(
        Commission.currency,
        Commission.generation,
        db.func.count(distinct(Commission.referred_user_id)),
        db.func.coalesce(db.func.sum(Commission.amount), 0),
    ).filter(
        Commission.beneficiary_id == user_id,
        Commission.status == COMPLETED,
    ).group_by(Commission.currency, Commission.generation).all()

    per_currency: Dict[str, Dict] = {}
    for currency, generation, count, earnings in rows:
        data = per_currency.setdefault(currency, {g: (0, 0) for g in range(1, MAX_GENERATION + 1)})
        data[generation] = (int(count), int(earnings))

    if referred_users and not per_currency:
        per_currency[Currency.NAIRA.value] = {g: (0, 0) for g in range(1, MAX_GENERATION + 1)}

    ReferralAggregate.query.filter_by(user_id=user_id).delete()

    now = utcnow()
    for currency, data in per_currency.items():
        db.session.add(ReferralAggregate(
            user_id=user_id,
            currency=currency,
            referred_users=referred_users,
            total_earnings=sum(earnings for _, earnings in data.values()),
            gen1_count=data[1][0],
            gen1_earnings=data[1][1],
            gen2_count=data[2][0],
            gen2_earnings=data[2][1],
            gen3_count=data[3][0],
            gen3_earnings=data[3][1],
            last_recomputed_at=now,
        ))
    db.session.flush()


# ==========================================================
#                  BATCH RECOMPUTE
# ==========================================================
class ReferralRecomputeJob:

    def __init__(self, stop_event: Optional[threading.Event] = None):
        self.stop_event = stop_event or threading.Event()
        self._run_lock = threading.Lock()
        self.is_processing = False
        self.last_processed_at: Optional[datetime] = None
        self.last_stats: Optional[Dict] = None

    @staticmethod
    def potential_referrers() -> List[User]:
        return User.query.filter(
            User.handle_lower.isnot(None),
            User.handle_lower != "",
            User.is_active.is_(True),
            User.is_banned.isnot(True),
        ).order_by(User.id.asc()).all()

    @staticmethod
    def completed_transactions_by_user() -> Dict[int, List[ShareTransaction]]:
        grouped = defaultdict(list)
        for tx in ShareTransaction.query.filter_by(status=COMPLETED).order_by(ShareTransaction.id.asc()):
            grouped[tx.user_id].append(tx)
        return grouped

    @staticmethod
    def expected_commissions(beneficiary: User, graph: ReferralGraph,
                             transactions: Dict[int, List[ShareTransaction]],
                             rates: Dict[int, object]) -> List[Commission]:
        commissions = []
        for generation, referred in graph.downline(beneficiary):
            for tx in transactions.get(referred.id, []):
                amount = percent_of(tx.amount, rates[generation])
                if amount <= 0:
                    continue
                commissions.append(Commission(
                    beneficiary_id=beneficiary.id,
                    referred_user_id=referred.id,
                    generation=generation,
                    amount=amount,
                    currency=tx.currency,
                    source_ref=tx.source_ref,
                    source_kind=tx.source_kind,
                    status=COMPLETED,
                ))
        return commissions

    def run(self) -> Dict:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Referral recompute already running, skipping")
            return {"already_running": True}

        self.is_processing = True
        stats = {
            "started_at": utcnow().isoformat(),
            "finished_at": None,
            "processed": 0,
            "with_referrals": 0,
            "commissions_created": 0,
            "earnings": {},
            "errors": 0,
            "skipped_users": 0,
            "cofounder_transactions": 0,
            "stopped": False,
        }

        try:
            rates = SettlementConfigHelper.referral_rates()
            graph = ReferralGraph.load()
            transactions = self.completed_transactions_by_user()
            referrers = self.potential_referrers()
            stats["skipped_users"] = len(graph.self_referrals) + len(graph.dangling)
            db.session.commit()

            logger.info(f"Referral recompute started for {len(referrers)} potential referrers "
                        f"(rates {', '.join(str(rates[g]) for g in sorted(rates))})")

            for beneficiary in referrers:
                if self.stop_event.is_set():
                    stats["stopped"] = True
                    logger.info(f"Referral recompute stopped after {stats['processed']} beneficiaries")
                    break

                beneficiary_id = beneficiary.id
                direct = graph.direct_referrals(beneficiary)
                try:
                    expected = self.expected_commissions(beneficiary, graph, transactions, rates)

                    Commission.query.filter_by(beneficiary_id=beneficiary_id).delete()
                    db.session.add_all(expected)
                    refresh_aggregates(beneficiary_id, referred_users=len(direct))
                    db.session.commit()

                except Exception as e:
                    db.session.rollback()
                    stats["errors"] += 1
                    logger.error(f"Referral recompute failed for beneficiary {beneficiary_id}: {e}")
                    continue

                stats["processed"] += 1
                if direct:
                    stats["with_referrals"] += 1
                stats["commissions_created"] += len(expected)
                for commission in expected:
                    stats["earnings"][commission.currency] = (
                        stats["earnings"].get(commission.currency, 0) + commission.amount
                    )
                    if commission.source_kind == SourceKind.COFOUNDER.value:
                        stats["cofounder_transactions"] += 1

            return stats

        finally:
            stats["finished_at"] = utcnow().isoformat()
            self.last_processed_at = utcnow()
            self.last_stats = stats
            self.is_processing = False
            self._run_lock.release()
            logger.info(
                f"Referral recompute finished: processed={stats['processed']} "
                f"with_referrals={stats['with_referrals']} commissions={stats['commissions_created']} "
                f"errors={stats['errors']}"
            )

    def processing_status(self) -> Dict:
        return {
            "is_processing": self.is_processing,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "last_stats": self.last_stats,
        }


# ==========================================================
#                  LIVE COMMISSION HOOK
# ==========================================================
def _insert_commission(commission: Commission):
    """Insert and commit one commission; UniquenessConflict if its key already exists."""
    exists = Commission.query.filter_by(
        beneficiary_id=commission.beneficiary_id,
        referred_user_id=commission.referred_user_id,
        generation=commission.generation,
        source_ref=commission.source_ref,
    ).first()
    if exists:
        raise UniquenessConflict(f"Commission {commission.key} already recorded")
    try:
        db.session.add(commission)
        db.session.commit()
    except IntegrityError as e:
        # written concurrently under the same key
        db.session.rollback()
        raise UniquenessConflict(f"Commission {commission.key} already recorded") from e


def record_live_commissions(transaction: ShareTransaction) -> Dict:
    """Write G1-G3 commissions for one completed transaction."""
    result = {"created": 0, "existing": 0, "beneficiaries": []}
    if transaction.status != COMPLETED:
        logger.info(f"Skipping commissions for non-completed transaction {transaction.source_ref}")
        return result

    buyer = User.query.get(transaction.user_id)
    if buyer is None:
        logger.warning(f"Transaction {transaction.source_ref} has no owner, no commissions")
        return result

    rates = SettlementConfigHelper.referral_rates()
    for generation, beneficiary in upline(buyer):
        # same beneficiary filter as the batch recompute
        if not beneficiary.is_active or beneficiary.is_banned:
            continue
        amount = percent_of(transaction.amount, rates[generation])
        if amount <= 0:
            continue

        beneficiary_id = beneficiary.id
        try:
            _insert_commission(Commission(
                beneficiary_id=beneficiary_id,
                referred_user_id=buyer.id,
                generation=generation,
                amount=amount,
                currency=transaction.currency,
                source_ref=transaction.source_ref,
                source_kind=transaction.source_kind,
                status=COMPLETED,
            ))
            result["created"] += 1
        except UniquenessConflict:
            result["existing"] += 1
            continue

        try:
            refresh_aggregates(beneficiary_id)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Aggregate refresh failed for beneficiary {beneficiary_id}: {e}")
        result["beneficiaries"].append(beneficiary_id)

    logger.info(f"Live commissions for {transaction.source_ref}: created={result['created']} "
                f"existing={result['existing']}")
    return result


def complete_share_transaction(transaction_id: int, completed_at: Optional[datetime] = None) -> Dict:
    """Mark a share purchase completed and pay its referral commissions."""
    transaction = ShareTransaction.query.get(transaction_id)
    if transaction is None:
        raise InvalidTransitionError(f"Share transaction {transaction_id} not found")

    if transaction.status == TransactionStatus.FAILED.value:
        raise InvalidTransitionError(f"Share transaction {transaction.source_ref} has failed")

    if transaction.status != COMPLETED:
        transaction.status = COMPLETED
        transaction.completed_at = completed_at or utcnow()
        db.session.commit()

    return record_live_commissions(transaction)
