from enum import Enum
from sqlalchemy.exc import OperationalError, SQLAlchemyError


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    TOURNAMENT_NOT_FOUND = "tournament_not_found"
    TOURNAMENT_INACTIVE = "tournament_inactive"
    TOURNAMENT_FULL = "tournament_full"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT_STORE_ERROR = "transient_store_error"


# HTTP status used by the JSON adapter for each code
HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.TOURNAMENT_NOT_FOUND: 404,
    ErrorCode.TOURNAMENT_FULL: 409,
    ErrorCode.TOURNAMENT_INACTIVE: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.TRANSIENT_STORE_ERROR: 503,
}

_LOCK_MARKERS = (
    'database is locked',
    'could not obtain lock',
    'lock timeout',
    'deadlock detected',
    'could not serialize access',
)


class TransientStoreError(Exception):
    """
    The store failed mid-operation. The transaction was rolled back,
    nothing changed, and the whole call is safe to retry.
    """

    code = ErrorCode.TRANSIENT_STORE_ERROR

    def __init__(self, operation: str, reason: str = None):
        self.operation = operation
        self.reason = reason or f"Store failure during {operation}"
        super().__init__(self.reason)

    def to_dict(self):
        return {
            'ok': False,
            'error': self.code.value,
            'message': self.reason,
            'retryable': True,
        }


class ConflictError(TransientStoreError):
    """Lock contention or serialization failure."""

    code = ErrorCode.CONFLICT


def store_error(operation: str, exc: SQLAlchemyError) -> TransientStoreError:
    """Classify a SQLAlchemy failure that has already been rolled back."""
    message = str(getattr(exc, 'orig', None) or exc).lower()
    if isinstance(exc, OperationalError) and any(m in message for m in _LOCK_MARKERS):
        return ConflictError(operation, f"Lock contention during {operation}, retry")
    return TransientStoreError(operation, f"Store failure during {operation}: {exc.__class__.__name__}")
