#======================================================================================
#
#   WITHDRAWALS: request, status lookup, history and balances
#
#======================================================================================
from flask import Blueprint, jsonify, request, session
import logging

from models import Currency, PaymentMethod
from settlement import services
from settlement.config import SettlementConfigHelper
from settlement.exceptions import WithdrawalValidationError, DuplicateReferenceError, UniquenessConflict
from settlement.money import to_minor, format_amount

logger = logging.getLogger(__name__)

bp = Blueprint("withdrawals", __name__, url_prefix="/withdrawals")


def _serialize(withdrawal):
    data = withdrawal.to_dict()
    data["amount_display"] = format_amount(withdrawal.amount, withdrawal.currency)
    return data


@bp.route("", methods=["POST"])
def request_withdrawal():
    """
    Create a pending withdrawal.

    Body: {"amount": "1500.00", "currency": "naira", "payment_method": "bank",
           "payment_details": {...}, "client_reference": optional}
    `amount` is in major units.
    """
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = request.get_json(silent=True) or {}

    currency = (data.get("currency") or Currency.NAIRA.value).lower()
    payment_method = (data.get("payment_method") or "").lower()
    if data.get("amount") in (None, ""):
        return jsonify({"error": "Amount is required"}), 400

    try:
        amount = to_minor(data.get("amount"), currency)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        withdrawal = services.submit_withdrawal(
            user_id,
            amount,
            currency,
            payment_method,
            payment_details=data.get("payment_details") or {},
            client_reference=data.get("client_reference"),
        )
    except DuplicateReferenceError as e:
        return jsonify({"error": str(e)}), 409
    except UniquenessConflict as e:
        return jsonify({"error": str(e), "retry": True}), 409
    except WithdrawalValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error(f"Withdrawal request failed for user {user_id}: {e}")
        return jsonify({"error": "Withdrawal processing failed"}), 500

    return jsonify({
        "success": True,
        "message": "Withdrawal request submitted successfully",
        "withdrawal": _serialize(withdrawal),
    }), 201


@bp.route("", methods=["GET"])
def withdrawal_history():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    limit = min(request.args.get("limit", 10, type=int), 100)
    withdrawals = services.withdrawal_history(user_id, limit=limit)
    return jsonify({
        "success": True,
        "withdrawals": [_serialize(w) for w in withdrawals],
        "total": len(withdrawals),
    }), 200


@bp.route("/balances", methods=["GET"])
def withdrawal_balances():
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    limits = SettlementConfigHelper.withdrawal_limits()
    return jsonify({
        "success": True,
        "balances": services.withdrawal_balances(user_id),
        "limits": {"min_withdrawal": limits["min"], "max_withdrawal": limits["max"]},
        "payment_methods": [m.value for m in PaymentMethod],
    }), 200


@bp.route("/<int:withdrawal_id>", methods=["GET"])
def get_withdrawal_status(withdrawal_id):
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    withdrawal = services.get_withdrawal(withdrawal_id, user_id=user_id)
    if not withdrawal:
        return jsonify({"error": "Withdrawal not found"}), 404
    return jsonify({"success": True, "withdrawal": _serialize(withdrawal)}), 200


@bp.route("/by-reference/<client_reference>", methods=["GET"])
def get_withdrawal_by_reference(client_reference):
    user_id = session.get("user_id")
    if not user_id:
        return jsonify({"error": "User not authenticated"}), 401

    withdrawal = services.get_withdrawal_by_reference(client_reference, user_id=user_id)
    if not withdrawal:
        return jsonify({"error": "Withdrawal not found"}), 404
    return jsonify({"success": True, "withdrawal": _serialize(withdrawal)}), 200
