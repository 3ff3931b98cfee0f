# settlement/exceptions.py

# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class SettlementError(Exception):
    """Base settlement exception"""
    pass


class ConfigurationError(SettlementError):
    """A required setting (e.g. the gateway API key) is missing or invalid."""
    pass


class GatewayUnavailable(SettlementError):
    """Transport-level gateway failure: network error, timeout or 5xx."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ConsistencyError(SettlementError):
    """A ledger mutation would break a bucket invariant."""

    def __init__(self, message, user_id=None, currency=None, bucket=None):
        super().__init__(message)
        self.user_id = user_id
        self.currency = currency
        self.bucket = bucket


class UniquenessConflict(SettlementError):
    """The row being inserted already exists under its uniqueness key."""
    pass


class NotificationFailure(SettlementError):
    pass


class WithdrawalValidationError(SettlementError):
    pass


class DuplicateReferenceError(WithdrawalValidationError):
    pass


class InvalidTransitionError(SettlementError):
    pass


class PlanNotFoundError(SettlementError):
    pass


class PlanValidationError(SettlementError):
    pass
