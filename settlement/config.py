# settlement/config.py
from decimal import Decimal, InvalidOperation
from typing import Dict, Any
from flask import current_app
import logging

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class SettlementConfigHelper:
    """
    Typed access to settlement settings held in app.config.
    Referral rates default to 15% / 3% / 2% for generations 1-3;
    late fees default to 0.5% per month capped at 7.5% of the plan price.
    """

    DEFAULT_REFERRAL_RATES = {
        1: Decimal('15'),
        2: Decimal('3'),
        3: Decimal('2'),
    }
    DEFAULT_LATE_FEE_PERCENTAGE = Decimal('0.5')
    DEFAULT_LATE_FEE_CAP_PERCENT = Decimal('7.5')
    DEFAULT_GRACE_PERIOD_DAYS = 7
    DEFAULT_GATEWAY_TIMEOUT = 10

    MAX_GENERATION = 3

    @staticmethod
    def _decimal(key: str, default: Decimal) -> Decimal:
        raw = current_app.config.get(key)
        if raw is None or raw == "":
            return default
        try:
            value = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            logger.warning(f"Invalid {key}={raw!r}, using default {default}")
            return default
        if value < 0:
            logger.warning(f"Negative {key}={raw!r}, using default {default}")
            return default
        return value

    @staticmethod
    def referral_rates() -> Dict[int, Decimal]:
        """Per-generation commission rates in percent, e.g. {1: 15, 2: 3, 3: 2}"""
        raw = current_app.config.get("REFERRAL_RATES")
        if not raw:
            return dict(SettlementConfigHelper.DEFAULT_REFERRAL_RATES)

        if isinstance(raw, dict):
            items = [raw.get(g, raw.get(str(g))) for g in range(1, SettlementConfigHelper.MAX_GENERATION + 1)]
        else:
            items = [part.strip() for part in str(raw).split(",")]

        if len(items) != SettlementConfigHelper.MAX_GENERATION:
            logger.warning(f"REFERRAL_RATES must have {SettlementConfigHelper.MAX_GENERATION} entries, got {raw!r}")
            return dict(SettlementConfigHelper.DEFAULT_REFERRAL_RATES)

        rates = {}
        for generation, item in enumerate(items, start=1):
            try:
                rate = Decimal(str(item))
            except (InvalidOperation, ValueError):
                logger.warning(f"Invalid referral rate {item!r} for generation {generation}, using defaults")
                return dict(SettlementConfigHelper.DEFAULT_REFERRAL_RATES)
            if rate < 0 or rate > 100:
                logger.warning(f"Referral rate {rate} for generation {generation} out of range, using defaults")
                return dict(SettlementConfigHelper.DEFAULT_REFERRAL_RATES)
            rates[generation] = rate
        return rates

    @staticmethod
    def late_fee_percentage() -> Decimal:
        return SettlementConfigHelper._decimal("LATE_FEE_PERCENTAGE",
                                               SettlementConfigHelper.DEFAULT_LATE_FEE_PERCENTAGE)

    @staticmethod
    def late_fee_cap_percent() -> Decimal:
        return SettlementConfigHelper._decimal("LATE_FEE_CAP_PERCENT",
                                               SettlementConfigHelper.DEFAULT_LATE_FEE_CAP_PERCENT)

    @staticmethod
    def grace_period_days() -> int:
        return int(current_app.config.get("GRACE_PERIOD_DAYS", SettlementConfigHelper.DEFAULT_GRACE_PERIOD_DAYS))

    @staticmethod
    def reminder_window_days() -> int:
        return int(current_app.config.get("REMINDER_WINDOW_DAYS", 14))

    @staticmethod
    def gateway_settings() -> Dict[str, Any]:
        return {
            "api_key": current_app.config.get("GATEWAY_API_KEY"),
            "base_url": current_app.config.get("GATEWAY_BASE_URL"),
            "timeout": int(current_app.config.get("GATEWAY_TIMEOUT_SECONDS",
                                                  SettlementConfigHelper.DEFAULT_GATEWAY_TIMEOUT)),
        }

    @staticmethod
    def withdrawal_limits() -> Dict[str, int]:
        return {
            "min": int(current_app.config.get("WITHDRAWAL_MIN", 0)),
            "max": int(current_app.config.get("WITHDRAWAL_MAX", 0)),
        }

    @staticmethod
    def get_settings_summary() -> Dict[str, Any]:
        """Non-secret settings, for the admin jobs endpoint"""
        gateway = SettlementConfigHelper.gateway_settings()
        return {
            "referral_rates": {g: str(r) for g, r in SettlementConfigHelper.referral_rates().items()},
            "late_fee_percentage": str(SettlementConfigHelper.late_fee_percentage()),
            "late_fee_cap_percent": str(SettlementConfigHelper.late_fee_cap_percent()),
            "grace_period_days": SettlementConfigHelper.grace_period_days(),
            "gateway_base_url": gateway["base_url"],
            "gateway_configured": bool(gateway["api_key"]),
            "gateway_timeout": gateway["timeout"],
        }


def parse_schedule(value: str) -> Dict[str, Any]:
    """
    Turn a schedule string into APScheduler cron trigger fields.

        "02:00"      -> every day at 02:00
        "sun 03:00"  -> Sundays at 03:00
        "1 04:00"    -> first day of the month at 04:00
    """
    parts = value.strip().lower().split()
    if not parts or len(parts) > 2:
        raise ValueError(f"Invalid schedule: {value!r}")

    hour, _, minute = parts[-1].partition(":")
    try:
        fields = {"hour": int(hour), "minute": int(minute or 0)}
    except ValueError as e:
        raise ValueError(f"Invalid schedule time: {value!r}") from e
    if not (0 <= fields["hour"] <= 23 and 0 <= fields["minute"] <= 59):
        raise ValueError(f"Invalid schedule time: {value!r}")

    if len(parts) == 2:
        day = parts[0]
        if day in WEEKDAYS:
            fields["day_of_week"] = day
        elif day.isdigit() and 1 <= int(day) <= 31:
            fields["day"] = int(day)
        else:
            raise ValueError(f"Invalid schedule day: {value!r}")
    return fields
