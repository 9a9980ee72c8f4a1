"""Shared FastAPI dependencies and service singletons."""
from __future__ import annotations

from fastapi import Depends, HTTPException, Request, WebSocket, status
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .database import get_db
from .security import TokenError, decode_token
from .services.presence import PresenceChannel, VetPresenceTracker
from .services.profiles import get_profile
from .services.realtime import broker
from .services.storage import FileUploadService, ObjectStorage

settings = get_settings()

storage = ObjectStorage(settings)
uploads = FileUploadService(storage, settings)
presence_channel = PresenceChannel(settings.presence_channel_key)
vet_tracker = VetPresenceTracker(presence_channel)
realtime_broker = broker


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1]
    return request.cookies.get(settings.access_token_cookie_name)


def authenticate_token(db: Session, token: str | None) -> models.User:
    """Resolve an access token to its user or raise 401/403."""

    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")

    try:
        payload = decode_token(token)
    except TokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token") from None

    user = db.query(models.User).filter(models.User.id == payload.get("sub")).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")

    if payload.get("aal") != "aal2":
        has_factor = (
            db.query(models.MfaFactor.id)
            .filter(models.MfaFactor.user_id == user.id, models.MfaFactor.status == "verified")
            .first()
        )
        if has_factor:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Two-factor verification required"
            )
    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> models.User:
    return authenticate_token(db, _extract_token(request))


def websocket_user(websocket: WebSocket, db: Session) -> models.User:
    token = websocket.query_params.get("token") or websocket.cookies.get(settings.access_token_cookie_name)
    return authenticate_token(db, token)


def require_role(*roles: models.UserRole):
    """Dependency factory restricting a route to the given profile roles."""

    allowed = {role.value for role in roles}

    def dependency(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)) -> models.User:
        profile = get_profile(db, user.id)
        if profile.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this account type")
        return user

    return dependency


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "0.0.0.0"


def get_user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
