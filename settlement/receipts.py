# settlement/receipts.py
import os
import logging
from typing import List, Optional, Tuple

from flask import current_app, render_template

from models import User, Withdrawal, PaymentMethod
from settlement.clock import utcnow, as_utc
from settlement.money import format_amount

logger = logging.getLogger(__name__)

DETAIL_LABELS = {
    PaymentMethod.BANK.value: [
        ("bankName", "Bank Name"),
        ("accountName", "Account Name"),
        ("accountNumber", "Account Number"),
    ],
    PaymentMethod.CRYPTO.value: [
        ("cryptoType", "Crypto Type"),
        ("walletAddress", "Wallet Address"),
    ],
    PaymentMethod.MOBILE_MONEY.value: [
        ("mobileProvider", "Mobile Provider"),
        ("mobileNumber", "Mobile Number"),
    ],
}


def _mask(value: str) -> str:
    value = str(value)
    if len(value) <= 4:
        return value
    return "*" * (len(value) - 4) + value[-4:]


def payment_detail_rows(withdrawal: Withdrawal) -> List[Tuple[str, str]]:
    details = withdrawal.payment_details or {}
    rows = []
    for key, label in DETAIL_LABELS.get(withdrawal.payment_method, []):
        value = details.get(key)
        if not value:
            continue
        if key in ("accountNumber", "mobileNumber"):
            value = _mask(value)
        rows.append((label, value))
    return rows


def render_withdrawal_receipt(withdrawal: Withdrawal, user: User) -> str:
    created_at = as_utc(withdrawal.created_at) or utcnow()
    return render_template(
        "receipts/withdrawal_receipt.html",
        withdrawal=withdrawal,
        user=user,
        amount=format_amount(withdrawal.amount, withdrawal.currency),
        details=payment_detail_rows(withdrawal),
        created_at=created_at.strftime("%B %d, %Y - %I:%M %p UTC"),
        generated_at=utcnow().strftime("%Y-%m-%d %H:%M UTC"),
    )


def generate_withdrawal_receipt(withdrawal: Withdrawal) -> Optional[str]:
    """Write an HTML receipt for a paid withdrawal and return its path."""
    user = User.query.get(withdrawal.user_id)
    if not user:
        logger.warning(f"Receipt skipped: user {withdrawal.user_id} not found for withdrawal {withdrawal.id}")
        return None

    receipts_dir = current_app.config.get("RECEIPTS_DIR") or os.path.join(current_app.instance_path, "receipts")
    os.makedirs(receipts_dir, exist_ok=True)

    file_name = f"withdrawal-{withdrawal.id}-{int(utcnow().timestamp())}.html"
    file_path = os.path.join(receipts_dir, file_name)
    with open(file_path, "w", encoding="utf-8") as fh:
        fh.write(render_withdrawal_receipt(withdrawal, user))

    logger.info(f"Receipt generated for withdrawal {withdrawal.id}: {file_path}")
    return file_path
