# Overview: Error taxonomy shared by services and routes; each kind maps to an HTTP status.

"""
Error kinds surfaced by the API.

Services raise these directly; blueprints let them propagate to the
app-level handlers registered in create_app(), which render the response
envelope {success: false, error, message, statusCode, details?}.
"""

from __future__ import annotations

from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm.exc import StaleDataError


class ApiError(Exception):
    status_code = 500
    error = "Internal"
    retryable = False

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "statusCode": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(ApiError, ValueError):
    """400-level input problem. details maps field name -> problem."""
    status_code = 400
    error = "Validation"


class NotFoundError(ApiError):
    status_code = 404
    error = "NotFound"

    def __init__(self, entity: str, entity_id=None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message, details={"entity": entity})
        self.entity = entity


class ConflictError(ApiError):
    """409: unique violation, lost optimistic lock, idempotency payload mismatch."""
    status_code = 409
    error = "Conflict"


class PreconditionFailedError(ApiError):
    """412: insufficient stock, invalid state transition."""
    status_code = 412
    error = "PreconditionFailed"


class UnauthenticatedError(ApiError):
    status_code = 401
    error = "Unauthenticated"


class ForbiddenError(ApiError):
    status_code = 403
    error = "Unauthorized"


class RateLimitedError(ApiError):
    status_code = 429
    error = "RateLimited"
    retryable = True

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, details={"retryAfter": retry_after})
        self.retry_after = retry_after


class ServiceUnavailableError(ApiError):
    """503: store not connected, agent pool saturated, print queue full."""
    status_code = 503
    error = "ServiceUnavailable"
    retryable = True


def classify_store_error(exc: Exception) -> ApiError:
    """Map a driver/ORM exception onto an API error kind."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, (IntegrityError, StaleDataError)):
        return ConflictError("Concurrent modification or duplicate record")
    if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return ServiceUnavailableError("Data store unavailable")
    return ApiError("Internal server error")
