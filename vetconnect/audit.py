"""Audit log of authentication events."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from . import models


class AuthEvent(str, Enum):
    SIGN_UP = "sign_up"
    SIGN_UP_FAILURE = "sign_up_failure"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGIN_RATE_LIMITED = "login_rate_limited"
    ACCOUNT_LOCKED = "account_locked"
    LOGOUT = "logout"
    OTP_SENT = "otp_sent"
    MFA_ENROLLED = "mfa_enrolled"
    MFA_VERIFIED = "mfa_verified"
    MFA_UNENROLLED = "mfa_unenrolled"


def log_event(
    db: Session,
    *,
    event_type: AuthEvent,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    entry = models.AuthLog(
        user_id=user_id,
        event_type=event_type.value,
        ip_address=ip_address,
        user_agent=user_agent,
        details=metadata,
    )
    db.add(entry)
    db.commit()
