"""
Application error taxonomy.

Services raise AppError subclasses; endpoints translate them into
HTTPException(status_code=e.status_code, detail=e.message).
"""

from typing import Optional


class AppError(Exception):
    """Base error carrying an HTTP status code"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFound(AppError):
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class PermissionDenied(AppError):
    def __init__(self, message: str = "Not permitted"):
        super().__init__(message, 403)


class ValidationFailure(AppError):
    def __init__(self, message: str):
        super().__init__(message, 422)


# ---------------------------------------------------------------------------
# Override token redemption
# ---------------------------------------------------------------------------

class TokenError(AppError):
    """Any redemption rejection"""

    reason = "invalid"


class TokenInvalid(TokenError):
    reason = "invalid"

    def __init__(self, message: str = "Override code is invalid"):
        super().__init__(message, 400)


class TokenExpired(TokenError):
    reason = "expired"

    def __init__(self, message: str = "Override code has expired"):
        super().__init__(message, 410)


class TokenAlreadyUsed(TokenError):
    reason = "already_used"

    def __init__(self, message: str = "Override code was already used"):
        super().__init__(message, 409)


# ---------------------------------------------------------------------------
# Lifecycle / review
# ---------------------------------------------------------------------------

class InvalidTransition(AppError):
    def __init__(self, current: Optional[str], target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot move session from '{current}' to '{target}'",
            409,
        )


class AlreadyReviewed(AppError):
    """Informational: the flag already carries a review outcome"""

    def __init__(self, flag_id: str, action: Optional[str]):
        self.flag_id = flag_id
        self.action = action
        super().__init__(f"Flag {flag_id} was already reviewed ({action})", 409)


# ---------------------------------------------------------------------------
# Host side (never surfaced to the end user)
# ---------------------------------------------------------------------------

class NativeCallFailure(AppError):
    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        super().__init__(f"Native call '{operation}' failed: {detail}", 500)


class TelemetryFetchFailure(AppError):
    def __init__(self, detail: str = ""):
        super().__init__(f"Telemetry fetch failed: {detail}", 503)
