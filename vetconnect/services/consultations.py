"""Consultation requests, dashboards and the vet acceptance workflow."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import commit
from ..errors import NotFoundError, PermissionDeniedError, ServiceError
from .profiles import get_profile, require_role
from .storage import FileUploadService, UploadFile, UploadOutcome

logger = logging.getLogger(__name__)

MAX_CONSULTATION_IMAGES = 5

Status = models.ConsultationStatus


def dashboard_stats(consultations: Sequence[models.Consultation]) -> schemas.DashboardStats:
    def count(status: Status) -> int:
        return sum(1 for c in consultations if c.status == status.value)

    return schemas.DashboardStats(
        total=len(consultations),
        pending=count(Status.PENDING),
        in_progress=count(Status.IN_PROGRESS),
        completed=count(Status.COMPLETED),
    )


def can_view(consultation: models.Consultation, user_id: str, role: str) -> bool:
    if consultation.farmer_id == user_id or consultation.vet_id == user_id:
        return True
    return (
        role == models.UserRole.VETERINARIAN.value
        and consultation.vet_id is None
        and consultation.status == Status.PENDING.value
    )


def is_participant(consultation: models.Consultation, user_id: str) -> bool:
    return user_id in (consultation.farmer_id, consultation.vet_id)


class ConsultationService:
    def __init__(self, uploads: FileUploadService | None = None) -> None:
        self.uploads = uploads or FileUploadService()

    # -------------------- Farmers --------------------
    def create(
        self,
        db: Session,
        farmer: models.User,
        payload: schemas.ConsultationCreate,
        images: Iterable[UploadFile] = (),
    ) -> Tuple[models.Consultation, UploadOutcome]:
        animal_id = str(payload.animal_id)
        animal = (
            db.query(models.Animal)
            .filter(models.Animal.id == animal_id, models.Animal.owner_id == farmer.id)
            .first()
        )
        if not animal:
            raise ServiceError("23503", "animal does not belong to requester", status=422)

        images = list(images)
        outcome = UploadOutcome()
        if images:
            outcome = self.uploads.upload_files(
                images, bucket="consultation-images", folder=farmer.id, max_files=MAX_CONSULTATION_IMAGES
            )

        consultation = models.Consultation(
            farmer_id=farmer.id,
            animal_id=animal.id,
            subject=payload.subject,
            description=payload.description,
            symptoms=payload.symptoms or None,
            urgency_level=payload.urgency_level.value,
            image_urls=outcome.urls or None,
            status=Status.PENDING.value,
        )
        db.add(consultation)
        commit(db)
        db.refresh(consultation)
        logger.info("Consultation %s requested by %s", consultation.id, farmer.id)
        return consultation, outcome

    def list_for_farmer(self, db: Session, farmer: models.User) -> List[models.Consultation]:
        return (
            db.query(models.Consultation)
            .filter(models.Consultation.farmer_id == farmer.id)
            .order_by(models.Consultation.created_at.desc())
            .all()
        )

    def farmer_dashboard(self, db: Session, farmer: models.User) -> schemas.FarmerDashboard:
        consultations = self.list_for_farmer(db, farmer)
        animals = (
            db.query(models.Animal)
            .filter(models.Animal.owner_id == farmer.id)
            .order_by(models.Animal.created_at.desc())
            .all()
        )
        return schemas.FarmerDashboard(
            consultations=[schemas.ConsultationRead.model_validate(c) for c in consultations],
            animals=[schemas.AnimalRead.model_validate(a) for a in animals],
            stats=dashboard_stats(consultations),
        )

    def cancel(self, db: Session, farmer: models.User, consultation_id: str) -> models.Consultation:
        consultation = self._get_owned(db, farmer, consultation_id)
        if consultation.status != Status.PENDING.value:
            raise ServiceError("invalid_status", "Only pending consultations can be cancelled", status=409)
        consultation.status = Status.CANCELLED.value
        db.add(consultation)
        commit(db)
        db.refresh(consultation)
        return consultation

    # -------------------- Veterinarians --------------------
    def vet_dashboard(self, db: Session, vet: models.User) -> schemas.VetDashboard:
        profile = require_role(db, vet, models.UserRole.VETERINARIAN)
        pending = (
            db.query(models.Consultation)
            .filter(models.Consultation.status == Status.PENDING.value, models.Consultation.vet_id.is_(None))
            .order_by(models.Consultation.created_at.desc())
            .all()
        )
        mine = (
            db.query(models.Consultation)
            .filter(models.Consultation.vet_id == vet.id)
            .order_by(models.Consultation.created_at.desc())
            .all()
        )
        return schemas.VetDashboard(
            pending=[schemas.ConsultationRead.model_validate(c) for c in pending],
            mine=[schemas.ConsultationRead.model_validate(c) for c in mine],
            stats=dashboard_stats(mine),
            profile=schemas.ProfileRead.model_validate(profile),
        )

    def accept(self, db: Session, vet: models.User, consultation_id: str) -> models.Consultation:
        """Assign the consultation to ``vet`` unless another vet got there first."""

        require_role(db, vet, models.UserRole.VETERINARIAN)
        result = db.execute(
            update(models.Consultation)
            .where(
                models.Consultation.id == consultation_id,
                models.Consultation.vet_id.is_(None),
                models.Consultation.status == Status.PENDING.value,
            )
            .values(vet_id=vet.id, status=Status.IN_PROGRESS.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        commit(db)
        if result.rowcount == 0:
            if db.get(models.Consultation, consultation_id) is None:
                raise NotFoundError("Consultation not found")
            raise ServiceError(
                "consultation_unavailable",
                "This consultation was already accepted by another veterinarian",
                status=409,
            )
        consultation = db.get(models.Consultation, consultation_id)
        db.refresh(consultation)
        logger.info("Consultation %s accepted by %s", consultation_id, vet.id)
        return consultation

    def update(
        self, db: Session, vet: models.User, consultation_id: str, payload: schemas.ConsultationUpdate
    ) -> models.Consultation:
        consultation = db.get(models.Consultation, consultation_id)
        if not consultation:
            raise NotFoundError("Consultation not found")
        if consultation.vet_id != vet.id:
            raise PermissionDeniedError("Only the assigned veterinarian can update this consultation")

        changes = payload.model_dump(exclude_unset=True)
        status = changes.pop("status", None)
        for name, value in changes.items():
            setattr(consultation, name, value)
        if status is not None:
            if status == Status.PENDING:
                raise ServiceError("invalid_status", "An accepted consultation cannot return to pending", status=409)
            consultation.status = status.value
            if status == Status.COMPLETED:
                consultation.completed_at = datetime.now(timezone.utc)
        db.add(consultation)
        commit(db)
        db.refresh(consultation)
        return consultation

    # -------------------- Shared --------------------
    def get(self, db: Session, user: models.User, consultation_id: str) -> models.Consultation:
        consultation = db.get(models.Consultation, consultation_id)
        if not consultation:
            raise NotFoundError("Consultation not found")
        profile = get_profile(db, user.id)
        if not can_view(consultation, user.id, profile.role):
            # hidden rather than forbidden
            raise NotFoundError("Consultation not found")
        return consultation

    def _get_owned(self, db: Session, farmer: models.User, consultation_id: str) -> models.Consultation:
        consultation = (
            db.query(models.Consultation)
            .filter(models.Consultation.id == consultation_id, models.Consultation.farmer_id == farmer.id)
            .first()
        )
        if not consultation:
            raise NotFoundError("Consultation not found")
        return consultation

