"""Utility modules for the Passkey Service."""

from .logging_utils import (  # Security logging; Performance logging; Error logging
    DatabaseLogger,
    SecurityLogger,
    log_auth_failure,
    log_auth_success,
    log_error_with_context,
    log_performance,
    log_security_event,
)

__all__ = [
    # Security logging
    "SecurityLogger",
    "log_security_event",
    "log_auth_success",
    "log_auth_failure",
    # Database logging
    "DatabaseLogger",
    # Performance logging
    "log_performance",
    "log_error_with_context",
]
