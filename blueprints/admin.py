#======================================================================================
#
# THIS IS ADMIN: manual job triggers, reconciler and ledger tools
#
#======================================================================================
from flask import jsonify, request, Blueprint, session, abort
from functools import wraps
import logging

from models import User
from settlement import services
from blueprints.installments import serialize_plan
from settlement.config import SettlementConfigHelper
from settlement.exceptions import (ConsistencyError, InvalidTransitionError,
                                   PlanNotFoundError, PlanValidationError)
from settlement.installment_penalty import InstallmentPenaltyJob
from settlement.ledger import LedgerAuditor
from settlement.money import to_minor
from settlement.withdrawal_state import WithdrawalStateMachine

logger = logging.getLogger(__name__)


def admin_required(f):
    """
    Decorator to restrict access to admin-only routes.
    - Checks that 'user_id' exists in session.
    - Fetches the user from the database (to get current role).
    - Aborts with 403 Forbidden if not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if "user_id" not in session:
            abort(403)

        user = User.query.get(session["user_id"])
        if not user or not user.is_admin:
            abort(403)

        return f(*args, **kwargs)

    return decorated_function


admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


#============================================================================================================
#     REFERRALS
#============================================================================================================
@admin_bp.route("/referrals/recompute", methods=["POST"])
@admin_required
def recompute_referrals():
    stats = services.trigger_referral_recompute()
    if stats.get("already_running"):
        return jsonify({"success": False, "message": "Referral recompute already running", **stats}), 409
    return jsonify({"success": True, "stats": stats}), 200


@admin_bp.route("/referrals/status", methods=["GET"])
@admin_required
def referral_status():
    return jsonify({"success": True, **services.referral_processing_status()}), 200


#============================================================================================================
#     INSTALLMENTS
#============================================================================================================
@admin_bp.route("/installments/penalty-check", methods=["POST"])
@admin_required
def installment_penalty_check():
    mode = request.args.get("mode", "daily")
    try:
        results = services.trigger_installment_penalty_check(mode)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True, "mode": mode, "results": results}), 200


@admin_bp.route("/installments/stats", methods=["GET"])
@admin_required
def installment_stats():
    return jsonify({"success": True, "stats": InstallmentPenaltyJob.weekly_stats()}), 200


@admin_bp.route("/installments/plans/<plan_ref>/payments", methods=["POST"])
@admin_required
def apply_installment_payment(plan_ref):
    """
    Apply a verified payment to a plan.
    Body: {"amount": "2500.00", "payment_reference": "LNC-123"} in the plan's currency.
    """
    try:
        plan = InstallmentPenaltyJob.get_plan(plan_ref)
    except PlanNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    data = request.get_json(silent=True) or {}
    payment_reference = (data.get("payment_reference") or "").strip()
    if not payment_reference:
        return jsonify({"error": "payment_reference is required"}), 400
    try:
        amount = to_minor(data.get("amount"), plan.currency)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        plan = services.get_supervisor().penalty_job.apply_payment(plan.id, amount)
    except PlanValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PlanNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    logger.warning(f"Admin {session['user_id']} applied payment {payment_reference} of {amount} "
                   f"to plan {plan_ref}")
    return jsonify({"success": True, "plan": serialize_plan(plan)}), 200


@admin_bp.route("/installments/plans/<plan_ref>/cancel", methods=["POST"])
@admin_required
def cancel_installment_plan(plan_ref):
    data = request.get_json(silent=True) or {}
    try:
        plan = InstallmentPenaltyJob.cancel_plan(plan_ref, reason=data.get("reason"))
    except PlanNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PlanValidationError as e:
        return jsonify({"error": str(e)}), 400

    logger.warning(f"Admin {session['user_id']} cancelled installment plan {plan_ref}")
    return jsonify({"success": True, "plan": serialize_plan(plan)}), 200


#============================================================================================================
#     RECONCILER & WITHDRAWALS
#============================================================================================================
@admin_bp.route("/reconciler/status", methods=["GET"])
@admin_required
def reconciler_status():
    return jsonify({"success": True, **services.reconciler_status()}), 200


@admin_bp.route("/reconciler/run", methods=["POST"])
@admin_required
def run_reconciler():
    return jsonify({"success": True, "results": services.run_reconciler()}), 200


@admin_bp.route("/withdrawals/<int:withdrawal_id>/verify", methods=["POST"])
@admin_required
def verify_withdrawal(withdrawal_id):
    try:
        result = services.verify_withdrawal(withdrawal_id)
    except ConsistencyError as e:
        return jsonify({"success": False, "error": str(e), "needs_review": True}), 409
    except InvalidTransitionError as e:
        return jsonify({"error": str(e)}), 404

    if not result.get("found"):
        return jsonify({"error": "Withdrawal not found"}), 404
    return jsonify({"success": True, **result}), 200


@admin_bp.route("/withdrawals/<int:withdrawal_id>/clear-review", methods=["POST"])
@admin_required
def clear_review(withdrawal_id):
    if not WithdrawalStateMachine.clear_review_flag(withdrawal_id):
        return jsonify({"error": "Withdrawal not found or not flagged"}), 404
    logger.warning(f"Admin {session['user_id']} cleared review flag on withdrawal {withdrawal_id}")
    return jsonify({"success": True}), 200


#============================================================================================================
#     LEDGER
#============================================================================================================
@admin_bp.route("/ledger/audit", methods=["GET"])
@admin_required
def ledger_audit():
    return jsonify({"success": True, **LedgerAuditor.audit_all()}), 200


@admin_bp.route("/ledger/rebuild", methods=["POST"])
@admin_required
def ledger_rebuild():
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if user_id is not None:
        try:
            changed = LedgerAuditor.rebuild_user_buckets(int(user_id))
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid user_id"}), 400
        logger.warning(f"Admin {session['user_id']} rebuilt ledger buckets for user {user_id}")
        return jsonify({"success": True, "user_id": int(user_id), "changed": changed}), 200

    stats = LedgerAuditor.rebuild_all()
    logger.warning(f"Admin {session['user_id']} rebuilt all ledger buckets: {stats}")
    return jsonify({"success": True, **stats}), 200


#============================================================================================================
#     JOBS
#============================================================================================================
@admin_bp.route("/jobs", methods=["GET"])
@admin_required
def job_status():
    return jsonify({
        "success": True,
        **services.job_status(),
        "settings": SettlementConfigHelper.get_settings_summary(),
    }), 200
