"""Sign-up and sign-in flows guarded by the authentication rate limiter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NoReturn, Optional

from sqlalchemy.orm import Session

from .. import models, schemas
from ..audit import AuthEvent, log_event
from ..config import Settings, get_settings
from ..errors import AuthError, RateLimitedError, ServiceError
from ..rate_limiter import AttemptResult, AuthRateLimiter, auth_rate_limiter
from .identity import AuthSession, IdentityProvider, LocalIdentityProvider

logger = logging.getLogger(__name__)


def normalize_identifier(email: str) -> str:
    return email.strip().lower()


class AuthAttemptFailed(Exception):
    """An authentication attempt was rejected and counted against the identifier."""

    def __init__(self, error: ServiceError, attempt: AttemptResult, context: str) -> None:
        super().__init__(error.message)
        self.error = error
        self.attempt = attempt
        self.context = context


@dataclass(frozen=True)
class LoginOutcome:
    session: Optional[AuthSession] = None
    mfa_required: bool = False
    user_id: Optional[str] = None
    factor_id: Optional[str] = None
    challenge_id: Optional[str] = None


class AuthService:
    def __init__(
        self,
        settings: Settings | None = None,
        identity: IdentityProvider | None = None,
        rate_limiter: AuthRateLimiter | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.identity = identity or LocalIdentityProvider(self.settings)
        self.rate_limiter = rate_limiter or auth_rate_limiter

    # -------------------- Registration --------------------
    def register(
        self,
        db: Session,
        *,
        payload: schemas.RegisterRequest,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthSession:
        identifier = normalize_identifier(payload.email)
        self._ensure_not_limited(db, identifier, ip_address=ip_address, user_agent=user_agent)

        try:
            session = self.identity.sign_up(
                db,
                email=identifier,
                password=payload.password,
                full_name=payload.full_name,
                role=payload.role,
            )
        except ServiceError as exc:
            self._register_failure(
                db,
                identifier,
                exc,
                event=AuthEvent.SIGN_UP_FAILURE,
                context="registration",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        self.rate_limiter.record_success(identifier)
        log_event(
            db,
            event_type=AuthEvent.SIGN_UP,
            user_id=session.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"role": payload.role},
        )
        return session

    # -------------------- Password login --------------------
    def login(
        self,
        db: Session,
        *,
        payload: schemas.LoginRequest,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginOutcome:
        identifier = normalize_identifier(payload.email)
        self._ensure_not_limited(db, identifier, ip_address=ip_address, user_agent=user_agent)

        try:
            session = self.identity.sign_in_with_password(db, email=identifier, password=payload.password)
        except ServiceError as exc:
            self._register_failure(
                db,
                identifier,
                exc,
                event=AuthEvent.LOGIN_FAILURE,
                context="login",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        return self._complete_first_factor(
            db, identifier, session, method="password", ip_address=ip_address, user_agent=user_agent
        )

    def verify_totp(
        self,
        db: Session,
        *,
        payload: schemas.TotpVerifyRequest,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthSession:
        identifier = normalize_identifier(payload.email)
        self._ensure_not_limited(db, identifier, ip_address=ip_address, user_agent=user_agent)

        try:
            user = db.query(models.User).filter(models.User.email == identifier).first()
            if not user:
                raise AuthError("invalid_credentials", "Invalid login credentials")
            session = self.identity.mfa_verify(
                db,
                user=user,
                factor_id=payload.factor_id,
                challenge_id=payload.challenge_id,
                code=payload.code,
            )
        except ServiceError as exc:
            self._register_failure(
                db,
                identifier,
                exc,
                event=AuthEvent.LOGIN_FAILURE,
                context="mfa_verification",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        self._register_success(db, identifier, session, method="totp", ip_address=ip_address, user_agent=user_agent)
        return session

    # -------------------- Email one-time code --------------------
    def send_login_code(self, db: Session, *, email: str, ip_address: str | None, user_agent: str | None) -> None:
        identifier = normalize_identifier(email)
        self._ensure_not_limited(db, identifier, ip_address=ip_address, user_agent=user_agent)
        self.identity.send_email_otp(db, email=identifier)
        log_event(db, event_type=AuthEvent.OTP_SENT, ip_address=ip_address, user_agent=user_agent)

    def verify_login_code(
        self,
        db: Session,
        *,
        payload: schemas.OtpVerifyRequest,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginOutcome:
        identifier = normalize_identifier(payload.email)
        self._ensure_not_limited(db, identifier, ip_address=ip_address, user_agent=user_agent)

        try:
            session = self.identity.verify_email_otp(db, email=identifier, code=payload.code)
        except ServiceError as exc:
            self._register_failure(
                db,
                identifier,
                exc,
                event=AuthEvent.LOGIN_FAILURE,
                context="otp_verification",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        return self._complete_first_factor(
            db, identifier, session, method="email_otp", ip_address=ip_address, user_agent=user_agent
        )

    # -------------------- Rate limit status --------------------
    def rate_limit_status(self, email: str) -> schemas.RateLimitStatus:
        identifier = normalize_identifier(email)
        status = self.rate_limiter.check_limit(identifier)
        return schemas.RateLimitStatus(
            limited=status.limited,
            remaining_seconds=status.remaining_seconds,
            remaining_attempts=self.rate_limiter.get_remaining_attempts(identifier),
            message=status.message,
        )

    # -------------------- Helpers --------------------
    def _complete_first_factor(
        self,
        db: Session,
        identifier: str,
        session: AuthSession,
        *,
        method: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginOutcome:
        user = db.get(models.User, session.user_id)
        factors = self.identity.mfa_list_factors(db, user=user)
        if not factors:
            self._register_success(db, identifier, session, method=method, ip_address=ip_address, user_agent=user_agent)
            return LoginOutcome(session=session, user_id=user.id)

        # second factor pending: the lockout stays until it succeeds
        challenge = self.identity.mfa_challenge(db, user=user, factor_id=factors[0].id)
        return LoginOutcome(
            mfa_required=True,
            user_id=user.id,
            factor_id=factors[0].id,
            challenge_id=challenge.id,
        )

    def _ensure_not_limited(
        self, db: Session, identifier: str, *, ip_address: str | None, user_agent: str | None
    ) -> None:
        status = self.rate_limiter.check_limit(identifier)
        if status.limited:
            log_event(
                db,
                event_type=AuthEvent.LOGIN_RATE_LIMITED,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"remaining_seconds": status.remaining_seconds},
            )
            raise RateLimitedError(status.message, status.remaining_seconds)

    def _register_failure(
        self,
        db: Session,
        identifier: str,
        error: ServiceError,
        *,
        event: AuthEvent,
        context: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> NoReturn:
        attempt = self.rate_limiter.record_failed_attempt(identifier)
        user = db.query(models.User).filter(models.User.email == identifier).first()
        log_event(
            db,
            event_type=event,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"code": error.code, "context": context},
        )
        if attempt.locked:
            log_event(
                db,
                event_type=AuthEvent.ACCOUNT_LOCKED,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"lockout_seconds": attempt.remaining_seconds},
            )
        raise AuthAttemptFailed(error, attempt, context) from error

    def _register_success(
        self,
        db: Session,
        identifier: str,
        session: AuthSession,
        *,
        method: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        self.rate_limiter.record_success(identifier)
        log_event(
            db,
            event_type=AuthEvent.LOGIN_SUCCESS,
            user_id=session.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"method": method, "aal": session.assurance_level},
        )
        logger.info("User %s signed in with %s", session.user_id, method)
