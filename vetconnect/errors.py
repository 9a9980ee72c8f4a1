"""Error taxonomy and user-facing error messages.

Every call into a collaborator (identity, rows, objects) converts failures into
a :class:`ServiceError` at the boundary. Routes never show provider text to the
user: :func:`get_user_friendly_error` maps the error onto a closed set of
messages.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from .logger import log_detail

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    AUTH = "auth"
    DATABASE = "database"
    STORAGE = "storage"
    NETWORK = "network"
    VALIDATION = "validation"
    DEFAULT = "default"


ERROR_CODE_MAP: dict[str, str] = {
    # PostgreSQL constraint violations
    "23502": "Required information is missing. Please fill in all required fields.",
    "23503": "Related information not found. Please check your selection.",
    "23505": "This entry already exists. Please use a different value.",
    "23514": "Invalid data provided. Please check your input.",
    # Row API
    "PGRST116": "No matching records found.",
    "PGRST301": "Invalid request format.",
    # Auth
    "invalid_grant": "Invalid credentials. Please check your email and password.",
    "invalid_credentials": "Invalid credentials. Please check your email and password.",
    "email_exists": "An account with this email already exists.",
    "weak_password": "Password is too weak. Please use a stronger password.",
    "user_not_found": "No account found with this email.",
    "invalid_otp": "Invalid verification code. Please try again.",
    "otp_expired": "Verification code has expired. Please request a new one.",
    "email_not_confirmed": "Please verify your email address before logging in.",
    # Storage
    "storage/object-not-found": "File not found.",
    "storage/unauthorized": "You do not have permission to access this file.",
    "storage/invalid-argument": "Invalid file format or size.",
    # Application
    "permission_denied": "You do not have permission to perform this action.",
    "consultation_unavailable": "This consultation has already been accepted by another veterinarian.",
    "invalid_status": "This action is not available for the consultation in its current state.",
    "empty_message": "Message cannot be empty.",
    "mfa_factor_not_found": "Authenticator not found. Please set it up again.",
    "mfa_already_enrolled": "Two-factor authentication is already enabled.",
    "mfa_challenge_expired": "Verification timed out. Please sign in again.",
}

GENERIC_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.AUTH: "Authentication failed. Please try again or contact support.",
    ErrorCategory.DATABASE: "Unable to process your request. Please try again.",
    ErrorCategory.STORAGE: "File operation failed. Please try again.",
    ErrorCategory.NETWORK: "Connection error. Please check your internet connection.",
    ErrorCategory.VALIDATION: "Invalid input. Please check your information.",
    ErrorCategory.DEFAULT: "An unexpected error occurred. Please try again or contact support.",
}

_PG_CODE = re.compile(r"^\d{5}$")


class ServiceError(Exception):
    """Failure reported by a collaborator, tagged with a code and category."""

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        status: int = 400,
        category: ErrorCategory | None = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.status = status
        self.details = details or {}
        self.category = category or categorize(self)

    def __repr__(self) -> str:
        return f"ServiceError(code={self.code!r}, status={self.status}, category={self.category.value})"


class AuthError(ServiceError):
    """Identity provider rejection."""

    def __init__(self, code: str, message: str = "", *, status: int = 400, **kwargs: Any) -> None:
        super().__init__(code, message, status=status, category=ErrorCategory.AUTH, **kwargs)


class NotFoundError(ServiceError):
    def __init__(self, message: str = "No matching records found.") -> None:
        super().__init__("PGRST116", message, status=404, category=ErrorCategory.DATABASE)


class PermissionDeniedError(ServiceError):
    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__("permission_denied", message, status=403, category=ErrorCategory.AUTH)


class RateLimitedError(Exception):
    """Identifier is locked out. Expected control flow, not a failure."""

    def __init__(self, message: str, remaining_seconds: int) -> None:
        super().__init__(message)
        self.message = message
        self.remaining_seconds = remaining_seconds


def categorize(error: Any) -> ErrorCategory:
    """Bucket an arbitrary error into one of the generic categories."""

    if error is None:
        return ErrorCategory.DEFAULT
    if isinstance(error, ValidationError):
        return ErrorCategory.VALIDATION

    name = type(error).__name__
    status = getattr(error, "status", None)
    code = str(getattr(error, "code", "") or "")
    message = str(getattr(error, "message", None) or error).lower()

    if isinstance(error, AuthError) or name == "AuthError" or status in (401, 403):
        return ErrorCategory.AUTH
    if "storage" in message or "storage" in code:
        return ErrorCategory.STORAGE
    if "fetch" in message or "network" in message:
        return ErrorCategory.NETWORK
    if "validation" in code:
        return ErrorCategory.VALIDATION
    if _PG_CODE.match(code):
        return ErrorCategory.DATABASE
    return ErrorCategory.DEFAULT


def from_integrity_error(exc: IntegrityError) -> ServiceError:
    """Translate a SQLAlchemy constraint violation into a PostgreSQL-style code."""

    text = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    if "not null" in text:
        return ServiceError("23502", str(exc.orig or exc), status=422, category=ErrorCategory.VALIDATION)
    if "foreign key" in text:
        code = "23503"
    elif "check constraint" in text:
        code = "23514"
    else:
        code = "23505"
    return ServiceError(code, str(exc.orig or exc), status=409)


def get_user_friendly_error(error: Any, context: str | None = None) -> str:
    """Convert ``error`` into a message safe to show to the user.

    The full error is logged for debugging; the log is development-only.
    """

    log_detail(
        logger,
        "Application error",
        {
            "context": context or "unknown",
            "type": type(error).__name__ if error is not None else None,
            "code": getattr(error, "code", None),
            "status": getattr(error, "status", None),
            "message": getattr(error, "message", None) or (str(error) if error is not None else None),
            "details": getattr(error, "details", None),
        },
    )

    if error is None:
        return GENERIC_MESSAGES[ErrorCategory.DEFAULT]

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in ERROR_CODE_MAP:
        return ERROR_CODE_MAP[code]

    message = str(getattr(error, "message", None) or error).lower()
    for known_code, friendly in ERROR_CODE_MAP.items():
        if known_code.lower() in message:
            return friendly

    return GENERIC_MESSAGES[categorize(error)]


def get_validation_error(error: Any) -> str:
    """Return the first validation message of a pydantic error, or a generic one."""

    errors = None
    if hasattr(error, "errors") and callable(error.errors):
        errors = error.errors()
    if errors:
        message = errors[0].get("msg")
        if message:
            # pydantic prefixes custom ValueError messages
            return message.removeprefix("Value error, ")
    return GENERIC_MESSAGES[ErrorCategory.VALIDATION]
