"""
Exception hierarchy for passkey ceremonies.

Every error carries a stable ``error_code`` and the HTTP status an outer
transport layer should map it to. The orchestrator raises these unchanged so a
caller can branch on the class (or the code) without parsing messages.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException


class PasskeyError(Exception):
    """Base exception for passkey operations."""

    default_error_code = "PASSKEY_ERROR"
    default_status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.status_code = status_code or self.default_status_code
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail={"message": self.message, "code": self.error_code})


class ConfigurationError(PasskeyError):
    """Raised when passkey support is not configured (relying party id or origins missing)."""

    default_error_code = "PASSKEY_NOT_CONFIGURED"
    default_status_code = 503


class ValidationError(PasskeyError):
    """Raised for malformed input."""

    default_error_code = "VALIDATION_ERROR"
    default_status_code = 422


class CredentialAlreadyRegisteredError(ValidationError):
    """Raised when a credential id is already stored."""

    default_error_code = "PASSKEY_ALREADY_REGISTERED"
    default_status_code = 409


class NotFoundError(PasskeyError):
    """Raised when a referenced user does not exist."""

    default_error_code = "USER_NOT_FOUND"
    default_status_code = 404


class ExpiredChallengeError(PasskeyError):
    """Raised when a challenge is missing, already consumed, or past its deadline."""

    default_error_code = "PASSKEY_CHALLENGE_EXPIRED"
    default_status_code = 410

    def __init__(self, message: str = "Passkey challenge expired or not found", **kwargs):
        super().__init__(message, **kwargs)


class EnrollmentRequiredError(PasskeyError):
    """Raised when authentication is requested for a user with no registered passkeys."""

    default_error_code = "PASSKEY_ENROLLMENT_REQUIRED"
    default_status_code = 412


class CredentialNotFoundError(PasskeyError):
    """Raised when a response references an unknown or revoked credential."""

    default_error_code = "PASSKEY_NOT_FOUND"
    default_status_code = 401


class VerificationError(PasskeyError):
    """Raised when the ceremony engine rejects an authenticator response."""

    default_error_code = "PASSKEY_VERIFICATION_FAILED"
    default_status_code = 400


class CounterRegressionError(VerificationError):
    """Raised when an authenticator reports a signature counter that did not advance."""

    default_error_code = "PASSKEY_COUNTER_REGRESSION"
    default_status_code = 401
