"""Identity provider: password accounts, email sign-in codes and TOTP factors.

The rest of the service only talks to the :class:`IdentityProvider` contract.
:class:`LocalIdentityProvider` implements it on the application database.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

import pyotp
from sqlalchemy.orm import Session

from .. import models
from ..config import Settings, get_settings
from ..database import commit
from ..email_service import EmailService
from ..errors import AuthError
from ..security import (
    create_access_token,
    generate_numeric_code,
    hash_password,
    hash_token,
    tokens_match,
    verify_password,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    user_id: str
    access_token: str
    expires_at: datetime
    assurance_level: str = "aal1"


@dataclass(frozen=True)
class TotpEnrollment:
    factor_id: str
    secret: str
    otpauth_uri: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IdentityProvider(Protocol):
    def sign_up(self, db: Session, *, email: str, password: str, full_name: str, role: str) -> AuthSession: ...

    def sign_in_with_password(self, db: Session, *, email: str, password: str) -> AuthSession: ...

    def send_email_otp(self, db: Session, *, email: str) -> None: ...

    def verify_email_otp(self, db: Session, *, email: str, code: str) -> AuthSession: ...

    def mfa_enroll(self, db: Session, *, user: models.User, friendly_name: str) -> TotpEnrollment: ...

    def mfa_list_factors(self, db: Session, *, user: models.User) -> List[models.MfaFactor]: ...

    def mfa_challenge(self, db: Session, *, user: models.User, factor_id: str) -> models.MfaChallenge: ...

    def mfa_verify(
        self, db: Session, *, user: models.User, factor_id: str, challenge_id: str, code: str
    ) -> AuthSession: ...

    def mfa_challenge_and_verify(
        self, db: Session, *, user: models.User, factor_id: str, code: str
    ) -> AuthSession: ...

    def mfa_unenroll(self, db: Session, *, user: models.User, factor_id: str) -> None: ...


class LocalIdentityProvider:
    def __init__(self, settings: Settings | None = None, email_service: EmailService | None = None) -> None:
        self.settings = settings or get_settings()
        self.email_service = email_service or EmailService(self.settings)

    # -------------------- Password accounts --------------------
    def sign_up(self, db: Session, *, email: str, password: str, full_name: str, role: str) -> AuthSession:
        email = email.strip().lower()
        if len(password) < self.settings.password_min_length:
            raise AuthError(
                "weak_password", f"Password should be at least {self.settings.password_min_length} characters"
            )
        if db.query(models.User).filter(models.User.email == email).first():
            raise AuthError("email_exists", "User already registered", status=422)

        user = models.User(email=email, password_hash=hash_password(password))
        user.profile = models.Profile(full_name=full_name.strip(), role=role)
        db.add(user)
        commit(db)
        db.refresh(user)
        logger.info("Account created for user %s with role %s", user.id, role)

        self.email_service.send_welcome(to_email=user.email, full_name=user.profile.full_name)
        return self._start_session(db, user)

    def sign_in_with_password(self, db: Session, *, email: str, password: str) -> AuthSession:
        user = self._find_user(db, email)
        if not user or not user.is_active or not verify_password(password, user.password_hash):
            raise AuthError("invalid_credentials", "Invalid login credentials")
        return self._start_session(db, user)

    # -------------------- Email one-time codes --------------------
    def send_email_otp(self, db: Session, *, email: str) -> None:
        user = self._find_user(db, email)
        if not user or not user.is_active:
            raise AuthError("user_not_found", "User not found", status=404)

        code = generate_numeric_code()
        db.add(
            models.EmailOtp(
                email=user.email,
                code_hash=hash_token(code),
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.settings.email_otp_exp_minutes),
            )
        )
        db.commit()
        self.email_service.send_login_code(to_email=user.email, code=code)

    def verify_email_otp(self, db: Session, *, email: str, code: str) -> AuthSession:
        email = email.strip().lower()
        record = (
            db.query(models.EmailOtp)
            .filter(models.EmailOtp.email == email, models.EmailOtp.used_at.is_(None))
            .order_by(models.EmailOtp.created_at.desc())
            .first()
        )
        if not record or not tokens_match(code, record.code_hash):
            raise AuthError("invalid_otp", "Token has expired or is invalid")
        now = datetime.now(timezone.utc)
        if now > _as_utc(record.expires_at):
            raise AuthError("otp_expired", "Token has expired or is invalid")

        user = self._find_user(db, email)
        if not user or not user.is_active:
            raise AuthError("user_not_found", "User not found", status=404)
        record.used_at = now
        db.add(record)
        db.commit()
        return self._start_session(db, user)

    # -------------------- TOTP factors --------------------
    def mfa_enroll(self, db: Session, *, user: models.User, friendly_name: str) -> TotpEnrollment:
        if self.mfa_list_factors(db, user=user):
            raise AuthError("mfa_already_enrolled", "A verified TOTP factor already exists", status=422)

        # replace any abandoned enrollment
        db.query(models.MfaFactor).filter(
            models.MfaFactor.user_id == user.id, models.MfaFactor.status == "unverified"
        ).delete(synchronize_session=False)

        secret = pyotp.random_base32()
        factor = models.MfaFactor(user_id=user.id, friendly_name=friendly_name, secret=secret)
        db.add(factor)
        db.commit()
        db.refresh(factor)

        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.settings.mfa_issuer)
        return TotpEnrollment(factor_id=factor.id, secret=secret, otpauth_uri=uri)

    def mfa_list_factors(self, db: Session, *, user: models.User) -> List[models.MfaFactor]:
        return (
            db.query(models.MfaFactor)
            .filter(models.MfaFactor.user_id == user.id, models.MfaFactor.status == "verified")
            .order_by(models.MfaFactor.created_at.asc())
            .all()
        )

    def mfa_challenge(self, db: Session, *, user: models.User, factor_id: str) -> models.MfaChallenge:
        factor = self._get_factor(db, user, factor_id)
        challenge = models.MfaChallenge(
            factor_id=factor.id,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.settings.mfa_challenge_exp_minutes),
        )
        db.add(challenge)
        db.commit()
        db.refresh(challenge)
        return challenge

    def mfa_verify(
        self, db: Session, *, user: models.User, factor_id: str, challenge_id: str, code: str
    ) -> AuthSession:
        factor = self._get_factor(db, user, factor_id)
        challenge = (
            db.query(models.MfaChallenge)
            .filter(models.MfaChallenge.id == challenge_id, models.MfaChallenge.factor_id == factor.id)
            .first()
        )
        if not challenge or challenge.verified_at is not None:
            raise AuthError("mfa_challenge_expired", "Challenge not found or already used")
        now = datetime.now(timezone.utc)
        if now > _as_utc(challenge.expires_at):
            raise AuthError("mfa_challenge_expired", "Challenge expired")
        if not pyotp.TOTP(factor.secret).verify(code, valid_window=1):
            raise AuthError("invalid_otp", "Invalid TOTP code entered")

        challenge.verified_at = now
        factor.status = "verified"
        db.add_all([challenge, factor])
        db.commit()
        return self._start_session(db, user, assurance_level="aal2")

    def mfa_challenge_and_verify(
        self, db: Session, *, user: models.User, factor_id: str, code: str
    ) -> AuthSession:
        challenge = self.mfa_challenge(db, user=user, factor_id=factor_id)
        return self.mfa_verify(db, user=user, factor_id=factor_id, challenge_id=challenge.id, code=code)

    def mfa_unenroll(self, db: Session, *, user: models.User, factor_id: str) -> None:
        factor = self._get_factor(db, user, factor_id)
        db.delete(factor)
        db.commit()

    # -------------------- Helpers --------------------
    def _find_user(self, db: Session, email: str) -> Optional[models.User]:
        return db.query(models.User).filter(models.User.email == email.strip().lower()).first()

    def _get_factor(self, db: Session, user: models.User, factor_id: str) -> models.MfaFactor:
        factor = (
            db.query(models.MfaFactor)
            .filter(models.MfaFactor.id == factor_id, models.MfaFactor.user_id == user.id)
            .first()
        )
        if not factor:
            raise AuthError("mfa_factor_not_found", "Factor not found", status=404)
        return factor

    def _start_session(self, db: Session, user: models.User, *, assurance_level: str = "aal1") -> AuthSession:
        user.last_sign_in_at = datetime.now(timezone.utc)
        db.add(user)
        db.commit()
        token, expires_at = create_access_token(user.id, assurance_level=assurance_level)
        return AuthSession(user_id=user.id, access_token=token, expires_at=expires_at, assurance_level=assurance_level)


