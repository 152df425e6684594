from decimal import Decimal
from typing import Optional


class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class InsufficientFundsError(LedgerServiceError):
    def __init__(self, user_id, bucket, available: Decimal, requested: Decimal):
        self.user_id = user_id
        self.bucket = bucket
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance in {bucket}: available {available}, requested {requested}"
        )


class InvalidStateTransitionError(LedgerServiceError):
    pass


class StorageConflictError(LedgerServiceError):
    pass


class IdempotencyConflictError(LedgerServiceError):
    pass


class PermissionDeniedError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class CommissionNotFoundError(NotFoundError):
    pass


class PayoutNotFoundError(NotFoundError):
    pass


class ActorNotFoundError(NotFoundError):
    pass


class SettingsValidationError(LedgerServiceError):
    def __init__(self, errors: list[str], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message or "; ".join(errors))
