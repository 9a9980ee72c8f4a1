"""FastAPI entrypoint for the VetConnect consultation service."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional
from uuid import uuid4

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import models, schemas
from .audit import AuthEvent, log_event
from .config import get_settings
from .database import SessionLocal, get_db, init_db
from .dependencies import (
    get_client_ip,
    get_current_user,
    get_user_agent,
    presence_channel,
    realtime_broker,
    require_role,
    storage,
    uploads,
    vet_tracker,
    websocket_user,
)
from .errors import RateLimitedError, ServiceError, get_user_friendly_error, get_validation_error
from .logger import configure_logging
from .security import attach_cookie
from .services import storage as storage_service
from .services.animals import AnimalService
from .services.auth_service import AuthAttemptFailed, AuthService
from .services.consultations import ConsultationService
from .services.identity import AuthSession
from .services.messaging import MESSAGES_TABLE, MessagingService
from .services.portfolio import PortfolioService
from .services.presence import PresenceEvent
from .services.profiles import ProfileService, get_profile
from .services.vet_directory import VetDirectory

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

auth_service = AuthService(settings)
identity = auth_service.identity
profile_service = ProfileService(uploads)
animal_service = AnimalService(uploads)
consultation_service = ConsultationService(uploads)
messaging_service = MessagingService(realtime_broker)
portfolio_service = PortfolioService(uploads)
vet_directory = VetDirectory(vet_tracker)

app = FastAPI(title=settings.app_name, version="1.0.0")

# CORS can be restricted per deployment; defaults target localhost for demos.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["https://localhost", "http://localhost", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

Farmer = Depends(require_role(models.UserRole.FARMER, models.UserRole.PET_OWNER))
Vet = Depends(require_role(models.UserRole.VETERINARIAN))


# -------------------- Error handlers --------------------
@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status,
        content={"detail": get_user_friendly_error(exc, request.url.path), "code": exc.code},
    )


@app.exception_handler(AuthAttemptFailed)
async def handle_auth_attempt_failed(request: Request, exc: AuthAttemptFailed) -> JSONResponse:
    attempt = exc.attempt
    headers = {}
    status_code = exc.error.status
    if attempt.locked:
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
        headers["Retry-After"] = str(attempt.remaining_seconds)
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "detail": get_user_friendly_error(exc.error, exc.context),
            "code": exc.error.code,
            "rate_limit": attempt.as_dict(),
        },
    )


@app.exception_handler(RateLimitedError)
async def handle_rate_limited(request: Request, exc: RateLimitedError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={"Retry-After": str(exc.remaining_seconds)},
        content={"detail": exc.message, "remaining_seconds": exc.remaining_seconds},
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": get_validation_error(exc)},
    )


# -------------------- Helpers --------------------
def _read_upload(file: UploadFile) -> storage_service.UploadFile:
    return storage_service.UploadFile(
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        data=file.file.read(),
    )


def _session_response(response: Response, session: AuthSession, detail: str) -> schemas.AuthResponse:
    attach_cookie(
        response,
        name=settings.access_token_cookie_name,
        value=session.access_token,
        expires=session.expires_at,
    )
    return schemas.AuthResponse(
        detail=detail,
        user_id=session.user_id,
        access_token=session.access_token,
        expires_at=session.expires_at,
        assurance_level=session.assurance_level,
    )


def _upload_result(outcome: storage_service.UploadOutcome) -> schemas.UploadResult:
    return schemas.UploadResult(urls=outcome.urls, errors=outcome.errors)


@app.get("/health", tags=["health"])
def healthcheck() -> dict:
    return {"status": "ok"}


# -------------------- Auth --------------------
@app.post("/auth/register", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    *,
    payload: schemas.RegisterRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> schemas.AuthResponse:
    session = auth_service.register(
        db, payload=payload, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    return _session_response(response, session, "Account created successfully")


@app.post("/auth/login", response_model=schemas.AuthResponse)
def login(
    *,
    payload: schemas.LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> schemas.AuthResponse:
    outcome = auth_service.login(
        db, payload=payload, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    if outcome.mfa_required:
        return schemas.AuthResponse(
            detail="Enter the code from your authenticator app",
            user_id=outcome.user_id,
            mfa_required=True,
            factor_id=outcome.factor_id,
            challenge_id=outcome.challenge_id,
        )
    return _session_response(response, outcome.session, "Signed in successfully")


@app.post("/auth/login/verify-totp", response_model=schemas.AuthResponse)
def login_verify_totp(
    *,
    payload: schemas.TotpVerifyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> schemas.AuthResponse:
    session = auth_service.verify_totp(
        db, payload=payload, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    return _session_response(response, session, "Signed in successfully")


@app.post("/auth/otp/send", response_model=schemas.Message)
def send_login_code(
    *, payload: schemas.OtpSendRequest, request: Request, db: Session = Depends(get_db)
) -> schemas.Message:
    auth_service.send_login_code(
        db, email=payload.email, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    return schemas.Message(detail="Check your email for the sign-in code")


@app.post("/auth/otp/verify", response_model=schemas.AuthResponse)
def verify_login_code(
    *,
    payload: schemas.OtpVerifyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> schemas.AuthResponse:
    outcome = auth_service.verify_login_code(
        db, payload=payload, ip_address=get_client_ip(request), user_agent=get_user_agent(request)
    )
    if outcome.mfa_required:
        return schemas.AuthResponse(
            detail="Enter the code from your authenticator app",
            user_id=outcome.user_id,
            mfa_required=True,
            factor_id=outcome.factor_id,
            challenge_id=outcome.challenge_id,
        )
    return _session_response(response, outcome.session, "Signed in successfully")


@app.get("/auth/rate-limit", response_model=schemas.RateLimitStatus)
def rate_limit_status(email: str = Query(..., min_length=1)) -> schemas.RateLimitStatus:
    return auth_service.rate_limit_status(email)


@app.post("/auth/logout", response_model=schemas.Message)
def logout(
    *,
    request: Request,
    response: Response,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.Message:
    attach_cookie(response, name=settings.access_token_cookie_name, value=None, expires=None)
    log_event(
        db,
        event_type=AuthEvent.LOGOUT,
        user_id=user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return schemas.Message(detail="Signed out")


@app.post("/auth/mfa/enroll", response_model=schemas.MfaEnrollResponse)
def mfa_enroll(
    payload: schemas.MfaEnrollRequest,
    request: Request,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.MfaEnrollResponse:
    enrollment = identity.mfa_enroll(db, user=user, friendly_name=payload.friendly_name)
    log_event(
        db,
        event_type=AuthEvent.MFA_ENROLLED,
        user_id=user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return schemas.MfaEnrollResponse(
        factor_id=enrollment.factor_id, secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri
    )


@app.post("/auth/mfa/verify", response_model=schemas.AuthResponse)
def mfa_verify(
    payload: schemas.MfaVerifyRequest,
    request: Request,
    response: Response,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.AuthResponse:
    session = identity.mfa_challenge_and_verify(db, user=user, factor_id=payload.factor_id, code=payload.code)
    log_event(
        db,
        event_type=AuthEvent.MFA_VERIFIED,
        user_id=user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _session_response(response, session, "Two-factor authentication enabled")


@app.get("/auth/mfa/factors", response_model=List[schemas.MfaFactorRead])
def mfa_factors(
    user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
) -> List[schemas.MfaFactorRead]:
    return [schemas.MfaFactorRead.model_validate(f) for f in identity.mfa_list_factors(db, user=user)]


@app.delete("/auth/mfa/factors/{factor_id}", response_model=schemas.Message)
def mfa_unenroll(
    factor_id: str,
    request: Request,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.Message:
    identity.mfa_unenroll(db, user=user, factor_id=factor_id)
    log_event(
        db,
        event_type=AuthEvent.MFA_UNENROLLED,
        user_id=user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return schemas.Message(detail="Two-factor authentication disabled")


# -------------------- Profile --------------------
@app.get("/profile", response_model=schemas.ProfileRead)
def read_profile(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return profile_service.get(db, user)


@app.patch("/profile", response_model=schemas.ProfileRead)
def update_profile(
    payload: schemas.ProfileUpdate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return profile_service.update(db, user, payload)


@app.post("/profile/photo", response_model=schemas.UploadResult)
def upload_profile_photo(
    file: UploadFile = File(...), user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
) -> schemas.UploadResult:
    _, outcome = profile_service.update_photo(db, user, _read_upload(file))
    return _upload_result(outcome)


# -------------------- Animals --------------------
@app.get("/animals", response_model=List[schemas.AnimalRead])
def list_animals(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return animal_service.list_animals(db, user)


@app.post("/animals", response_model=schemas.AnimalRead, status_code=status.HTTP_201_CREATED)
def create_animal(
    payload: schemas.AnimalCreate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return animal_service.create_animal(db, user, payload)


@app.get("/animals/{animal_id}", response_model=schemas.AnimalRead)
def read_animal(animal_id: str, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return animal_service.get_animal(db, user, animal_id)


@app.patch("/animals/{animal_id}", response_model=schemas.AnimalRead)
def update_animal(
    animal_id: str,
    payload: schemas.AnimalUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return animal_service.update_animal(db, user, animal_id, payload)


@app.delete("/animals/{animal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_animal(
    animal_id: str, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
) -> Response:
    animal_service.delete_animal(db, user, animal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/animals/{animal_id}/image", response_model=schemas.UploadResult)
def upload_animal_image(
    animal_id: str,
    file: UploadFile = File(...),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.UploadResult:
    _, outcome = animal_service.attach_image(db, user, animal_id, _read_upload(file))
    return _upload_result(outcome)


# -------------------- Consultations --------------------
@app.post(
    "/consultations", response_model=schemas.ConsultationCreateResponse, status_code=status.HTTP_201_CREATED
)
def create_consultation(
    subject: str = Form(...),
    description: str = Form(...),
    urgency_level: str = Form(...),
    animal_id: str = Form(...),
    symptoms: Optional[str] = Form(None),
    images: List[UploadFile] = File(default=[]),
    user: models.User = Farmer,
    db: Session = Depends(get_db),
) -> schemas.ConsultationCreateResponse:
    try:
        payload = schemas.ConsultationCreate(
            subject=subject,
            description=description,
            urgency_level=urgency_level,
            animal_id=animal_id,
            symptoms=symptoms,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    consultation, outcome = consultation_service.create(
        db, user, payload, [_read_upload(image) for image in images]
    )
    return schemas.ConsultationCreateResponse(
        consultation=schemas.ConsultationRead.model_validate(consultation), upload_errors=outcome.errors
    )


@app.get("/consultations", response_model=List[schemas.ConsultationRead])
def list_consultations(user: models.User = Farmer, db: Session = Depends(get_db)):
    return consultation_service.list_for_farmer(db, user)


@app.get("/consultations/dashboard/farmer", response_model=schemas.FarmerDashboard)
def farmer_dashboard(user: models.User = Farmer, db: Session = Depends(get_db)) -> schemas.FarmerDashboard:
    return consultation_service.farmer_dashboard(db, user)


@app.get("/consultations/dashboard/vet", response_model=schemas.VetDashboard)
def vet_dashboard(user: models.User = Vet, db: Session = Depends(get_db)) -> schemas.VetDashboard:
    return consultation_service.vet_dashboard(db, user)


@app.get("/consultations/{consultation_id}", response_model=schemas.ConsultationRead)
def read_consultation(
    consultation_id: str, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return consultation_service.get(db, user, consultation_id)


@app.patch("/consultations/{consultation_id}", response_model=schemas.ConsultationRead)
def update_consultation(
    consultation_id: str,
    payload: schemas.ConsultationUpdate,
    user: models.User = Vet,
    db: Session = Depends(get_db),
):
    return consultation_service.update(db, user, consultation_id, payload)


@app.post("/consultations/{consultation_id}/accept", response_model=schemas.ConsultationRead)
def accept_consultation(consultation_id: str, user: models.User = Vet, db: Session = Depends(get_db)):
    return consultation_service.accept(db, user, consultation_id)


@app.post("/consultations/{consultation_id}/cancel", response_model=schemas.ConsultationRead)
def cancel_consultation(consultation_id: str, user: models.User = Farmer, db: Session = Depends(get_db)):
    return consultation_service.cancel(db, user, consultation_id)


@app.get("/consultations/{consultation_id}/messages", response_model=List[schemas.MessageRead])
def list_messages(
    consultation_id: str, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)
) -> List[schemas.MessageRead]:
    return messaging_service.list_messages(db, user, consultation_id)


@app.post(
    "/consultations/{consultation_id}/messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    consultation_id: str,
    payload: schemas.MessageCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> schemas.MessageRead:
    return messaging_service.send_message(db, user, consultation_id, payload)


# -------------------- Vet directory --------------------
@app.get("/vets", response_model=List[schemas.VetPublic])
def list_vets(q: Optional[str] = None, db: Session = Depends(get_db)) -> List[schemas.VetPublic]:
    return vet_directory.list_vets(db, q)


@app.get("/vets/map", response_model=schemas.MapView)
def vets_map(
    q: Optional[str] = None, selected: Optional[str] = None, db: Session = Depends(get_db)
) -> schemas.MapView:
    return vet_directory.map(db, q, selected)


@app.post("/vets/map/sync", response_model=schemas.MapSync)
def vets_map_sync(payload: schemas.MapSyncRequest, db: Session = Depends(get_db)) -> schemas.MapSync:
    return vet_directory.sync_map(db, payload)


@app.get("/vets/online", response_model=List[schemas.OnlineVet])
def online_vets() -> List[schemas.OnlineVet]:
    return vet_directory.online()


@app.get("/vets/{user_id}", response_model=schemas.VetProfileDetail)
def read_vet(user_id: str, db: Session = Depends(get_db)) -> schemas.VetProfileDetail:
    return vet_directory.get_vet(db, user_id)


# -------------------- Portfolio --------------------
@app.get("/portfolio", response_model=List[schemas.PortfolioRead])
def list_portfolio(user: models.User = Vet, db: Session = Depends(get_db)):
    return portfolio_service.list_items(db, user)


@app.post("/portfolio", response_model=schemas.PortfolioRead, status_code=status.HTTP_201_CREATED)
def create_portfolio_item(payload: schemas.PortfolioCreate, user: models.User = Vet, db: Session = Depends(get_db)):
    return portfolio_service.create_item(db, user, payload)


@app.patch("/portfolio/{item_id}", response_model=schemas.PortfolioRead)
def update_portfolio_item(
    item_id: str, payload: schemas.PortfolioUpdate, user: models.User = Vet, db: Session = Depends(get_db)
):
    return portfolio_service.update_item(db, user, item_id, payload)


@app.delete("/portfolio/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_portfolio_item(item_id: str, user: models.User = Vet, db: Session = Depends(get_db)) -> Response:
    portfolio_service.delete_item(db, user, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/portfolio/{item_id}/image", response_model=schemas.UploadResult)
def upload_portfolio_image(
    item_id: str, file: UploadFile = File(...), user: models.User = Vet, db: Session = Depends(get_db)
) -> schemas.UploadResult:
    _, outcome = portfolio_service.attach_image(db, user, item_id, _read_upload(file))
    return _upload_result(outcome)


# -------------------- Storage --------------------
@app.get("/storage/{bucket}/{path:path}")
def download_object(bucket: str, path: str, expires: int, signature: str) -> FileResponse:
    if not storage.verify_signed_url(bucket, path, expires, signature):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Link expired or invalid")
    return FileResponse(storage.open(bucket, path))


# -------------------- Realtime --------------------
async def _forward_messages(websocket: WebSocket, subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event)


@app.websocket("/ws/consultations/{consultation_id}/messages")
async def consultation_messages_ws(websocket: WebSocket, consultation_id: str) -> None:
    db = SessionLocal()
    try:
        user = websocket_user(websocket, db)
        messaging_service.get_consultation_for(db, user, consultation_id)
    except (HTTPException, ServiceError):
        await websocket.close(code=4403)
        return
    finally:
        db.close()

    subscription = realtime_broker.subscribe(MESSAGES_TABLE, "consultation_id", consultation_id)
    await websocket.accept()
    forward = asyncio.create_task(_forward_messages(websocket, subscription))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Message stream closed for consultation %s", consultation_id)
    finally:
        forward.cancel()
        subscription.close()


@app.websocket("/ws/presence")
async def presence_ws(websocket: WebSocket) -> None:
    db = SessionLocal()
    try:
        user = websocket_user(websocket, db)
        profile = get_profile(db, user.id)
    except (HTTPException, ServiceError):
        await websocket.close(code=4401)
        return
    finally:
        db.close()

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue()

    def listener(event: PresenceEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event.as_dict())

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    ref = str(uuid4())
    presence_channel.subscribe(listener)
    sender = asyncio.create_task(forward())
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json({"event": "error", "detail": "Expected a JSON object"})
                continue
            action = message.get("action")
            if action == "track":
                if profile.role != models.UserRole.VETERINARIAN.value:
                    await websocket.send_json({"event": "error", "detail": "Only veterinarians share presence"})
                    continue
                try:
                    position = schemas.PresenceTrack(
                        latitude=message.get("latitude"), longitude=message.get("longitude")
                    )
                except ValidationError as exc:
                    await websocket.send_json({"event": "error", "detail": get_validation_error(exc)})
                    continue
                vet_tracker.track_vet(
                    ref,
                    id=profile.id,
                    user_id=profile.user_id,
                    full_name=profile.full_name,
                    latitude=position.latitude,
                    longitude=position.longitude,
                )
            elif action == "untrack":
                vet_tracker.untrack(ref)
    except WebSocketDisconnect:
        logger.debug("Presence connection closed for user %s", profile.user_id)
    finally:
        sender.cancel()
        presence_channel.unsubscribe(listener)
        vet_tracker.untrack(ref)
