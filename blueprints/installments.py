#======================================================================================
#
#   INSTALLMENT PLANS: creation, lookup and cancellation
#   Payments are applied by an admin once they are verified (see admin.py)
#
#======================================================================================
from flask import Blueprint, jsonify, request, session
import logging

from models import Currency, SourceKind
from settlement.exceptions import PlanNotFoundError, PlanValidationError
from settlement.installment_penalty import InstallmentPenaltyJob, late_fee_cap
from settlement.money import to_minor, format_amount

logger = logging.getLogger(__name__)

bp = Blueprint("installments", __name__, url_prefix="/installments")


def serialize_plan(plan):
    data = plan.to_dict()
    data["late_fee_cap"] = late_fee_cap(plan)
    data["remaining_display"] = format_amount(plan.remaining_balance, plan.currency)
    return data


@bp.route("/plans", methods=["POST"])
def create_plan():
    """Body: {"total_price": "10000.00", "months": 6, "currency": "naira", "total_shares": 10}"""
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    data = request.get_json(silent=True) or {}
    currency = (data.get("currency") or Currency.NAIRA.value).lower()
    if data.get("total_price") is None or data.get("months") is None:
        return jsonify({"error": "total_price and months are required"}), 400
    try:
        total_price = to_minor(data.get("total_price"), currency)
        months = int(data.get("months"))
        total_shares = int(data.get("total_shares", 0))
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    try:
        plan = InstallmentPenaltyJob.create_plan(
            user_id,
            total_price,
            months,
            currency=currency,
            total_shares=total_shares,
            plan_kind=(data.get("plan_kind") or SourceKind.SHARE.value).lower(),
        )
    except PlanValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"success": True, "plan": serialize_plan(plan)}), 201


@bp.route("/plans/<plan_ref>", methods=["GET"])
def get_plan(plan_ref):
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    try:
        plan = InstallmentPenaltyJob.get_plan(plan_ref, user_id=user_id)
    except PlanNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"success": True, "plan": serialize_plan(plan)}), 200


@bp.route("/plans/<plan_ref>/cancel", methods=["POST"])
def cancel_plan(plan_ref):
    """Body (optional): {"reason": "..."}. Only plans with nothing paid yet."""
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    data = request.get_json(silent=True) or {}
    try:
        plan = InstallmentPenaltyJob.cancel_plan(plan_ref, user_id=user_id, reason=data.get("reason"))
    except PlanNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PlanValidationError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"success": True, "plan": serialize_plan(plan)}), 200
