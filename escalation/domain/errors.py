"""
Error taxonomy for the escalation pipeline.

Errors are discriminated by code rather than by exception type. Services raise
EmergencyError internally and convert it into structured results at their
public boundary.
"""

from enum import Enum
from typing import Any


class EmergencyErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INVALID_PATIENT_ID = "INVALID_PATIENT_ID"
    MISSING_EMERGENCY_CONTACT = "MISSING_EMERGENCY_CONTACT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    LOCATION_PERMISSION_DENIED = "LOCATION_PERMISSION_DENIED"
    NOTIFICATION_SERVICE_UNAVAILABLE = "NOTIFICATION_SERVICE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"


class EmergencyError(Exception):
    """Expected failure carrying a code, a user-facing message and optional details."""

    def __init__(
        self,
        message: str,
        code: EmergencyErrorCode,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __repr__(self) -> str:
        return f"EmergencyError(code={self.code.value!r}, message={self.message!r})"


class StoreError(Exception):
    """Raised by store implementations when the underlying data store fails."""


class LocationError(Exception):
    """Raised by location providers when a fix cannot be obtained."""

    def __init__(self, message: str, *, permission_denied: bool = False) -> None:
        super().__init__(message)
        self.permission_denied = permission_denied


def unexpected(error: BaseException, message: str) -> EmergencyError:
    """Map an unexpected exception onto the DATABASE_ERROR fallback."""
    return EmergencyError(
        message,
        EmergencyErrorCode.DATABASE_ERROR,
        {"original_error": f"{type(error).__name__}: {error}"},
    )
