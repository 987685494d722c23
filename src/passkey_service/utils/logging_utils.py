"""Logging utilities for security-sensitive passkey operations.

This module provides decorators and helpers for adding detailed logging to the
passkey subsystem: security events, database operations, performance timing,
and error reporting with sanitized context.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from passkey_service.managers.logging_manager import get_logger

SENSITIVE_ARG_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "credential",
    "private",
    "challenge",
    "signature",
    "hash",
}

SENSITIVE_DETAIL_KEYS = {
    "password",
    "token",
    "secret",
    "hash",
    "signature",
    "private_key",
    "public_key",
}


@dataclass
class SecurityContext:
    """Security event context for logging."""

    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    success: bool = True
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None


@dataclass
class DatabaseContext:
    """Database operation context for logging."""

    operation: str
    collection: str
    query: Optional[Dict[str, Any]] = None
    duration: Optional[float] = None
    result_count: Optional[int] = None
    timestamp: Optional[str] = None


class SecurityLogger:
    """Specialized logger for security events."""

    def __init__(self, prefix: str = "[SECURITY]"):
        self.logger = get_logger(name="Passkey_Service_Security", prefix=prefix)

    def log_event(self, context: SecurityContext):
        """Log a security event with full context (structured)."""
        event_data = {
            "event": "security_event",
            "event_type": context.event_type,
            "timestamp": context.timestamp or datetime.now(timezone.utc).isoformat(),
            "success": context.success,
            "status": "SUCCESS" if context.success else "FAILURE",
            "user_id": context.user_id or "anonymous",
            "ip_address": context.ip_address or "unknown",
            "details": _sanitize_security_details(context.details) if context.details else None,
            "process": os.getpid(),
            "env": os.getenv("ENV", "dev"),
        }
        self.logger.info(event_data)


class DatabaseLogger:
    """Specialized logger for database operations (structured)."""

    def __init__(self, prefix: str = "[DATABASE]"):
        self.logger = get_logger(name="Passkey_Service_DB_Operations", prefix=prefix)

    def log_operation(self, context: DatabaseContext):
        log_data = {
            "event": "database_operation",
            "operation": context.operation,
            "collection": context.collection,
            "query": _sanitize_security_details(context.query) if context.query else None,
            "duration": context.duration,
            "result_count": context.result_count,
            "timestamp": context.timestamp or datetime.now(timezone.utc).isoformat(),
        }
        self.logger.info(log_data)
        if context.duration is not None and context.duration > 1.0:
            self.logger.warning(
                "SLOW QUERY: %s on %s - Duration: %.3fs", context.operation.upper(), context.collection, context.duration
            )


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log security-related events with proper context.

    Args:
        event_type: Type of security event (challenge issued, ceremony completed, ...)
        user_id: User identifier if available
        ip_address: Client IP address if available
        success: Whether the security event was successful
        details: Additional event details
    """
    logger = get_logger(name="Passkey_Service_Security", prefix="[SECURITY]")

    event_data = {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "success": success,
        "user_id": user_id or "anonymous",
        "ip_address": ip_address or "unknown",
    }

    if details:
        event_data["details"] = _sanitize_security_details(details)

    status = "SUCCESS" if success else "FAILURE"
    logger.info("SECURITY EVENT [%s]: %s - %s", status, event_type, event_data)


def log_auth_success(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log successful authentication events."""
    context = SecurityContext(
        event_type=event_type, user_id=user_id, ip_address=ip_address, success=True, details=details
    )
    SecurityLogger().log_event(context)


def log_auth_failure(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log failed authentication events."""
    context = SecurityContext(
        event_type=event_type, user_id=user_id, ip_address=ip_address, success=False, details=details
    )
    SecurityLogger().log_event(context)


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging function/method performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (be careful with sensitive data)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Passkey_Service_Performance", prefix="[PERFORMANCE]")

        def _start(args, kwargs) -> str:
            operation_id = str(uuid.uuid4())[:8]
            if log_args and (args or kwargs):
                logger.info("[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(args, kwargs))
            else:
                logger.info("[%s] Starting %s", operation_id, operation_name)
            return operation_id

        def _finish(operation_id: str, start_time: float) -> None:
            duration = time.time() - start_time
            logger.info("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > 2.0:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)

        def _fail(operation_id: str, start_time: float, error: Exception) -> None:
            duration = time.time() - start_time
            logger.error("[%s] Failed %s after %.3fs: %s", operation_id, operation_name, duration, str(error))

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _fail(operation_id, start_time, e)
                raise
            _finish(operation_id, start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _fail(operation_id, start_time, e)
                raise
            _finish(operation_id, start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="Passkey_Service_Errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stack_trace": traceback.format_exc(),
    }

    if operation:
        error_data["operation"] = operation

    if context:
        error_data["context"] = _sanitize_args((), context)

    logger.error("ERROR OCCURRED: %s", error_data)


def _sanitize_args(args: tuple, kwargs: dict) -> dict:
    """
    Sanitize function arguments to avoid logging sensitive data.

    Args:
        args: Positional arguments
        kwargs: Keyword arguments

    Returns:
        Sanitized arguments dictionary
    """
    sanitized = {}

    if args:
        sanitized["args"] = [
            (
                "<REDACTED>"
                if any(key in str(arg).lower() for key in SENSITIVE_ARG_KEYS)
                else str(arg)[:100] + ("..." if len(str(arg)) > 100 else "")
            )
            for arg in args
        ]

    if kwargs:
        sanitized["kwargs"] = {}
        for key, value in kwargs.items():
            if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_ARG_KEYS):
                sanitized["kwargs"][key] = "<REDACTED>"
            else:
                str_value = str(value)
                sanitized["kwargs"][key] = str_value[:100] + ("..." if len(str_value) > 100 else "")

    return sanitized


def _sanitize_security_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sanitize security event details to avoid logging sensitive information.

    Args:
        details: Original details dictionary

    Returns:
        Sanitized details dictionary
    """
    sanitized = {}
    for key, value in details.items():
        if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_DETAIL_KEYS):
            sanitized[key] = "<REDACTED>"
        else:
            sanitized[key] = value

    return sanitized
