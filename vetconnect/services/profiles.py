"""Own-profile reads and updates."""
from __future__ import annotations

import logging
from typing import Tuple

from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import commit
from ..errors import NotFoundError, PermissionDeniedError
from .storage import FileUploadService, UploadFile, UploadOutcome

logger = logging.getLogger(__name__)

VET_ONLY_FIELDS = {"license_number", "specialization"}


def get_profile(db: Session, user_id: str) -> models.Profile:
    profile = db.query(models.Profile).filter(models.Profile.user_id == user_id).first()
    if not profile:
        raise NotFoundError("Profile not found")
    return profile


def require_role(db: Session, user: models.User, *roles: models.UserRole) -> models.Profile:
    profile = get_profile(db, user.id)
    if profile.role not in {role.value for role in roles}:
        raise PermissionDeniedError(f"Only {', '.join(role.value for role in roles)} accounts can do this")
    return profile


class ProfileService:
    def __init__(self, uploads: FileUploadService | None = None) -> None:
        self.uploads = uploads or FileUploadService()

    def get(self, db: Session, user: models.User) -> models.Profile:
        return get_profile(db, user.id)

    def update(self, db: Session, user: models.User, payload: schemas.ProfileUpdate) -> models.Profile:
        profile = get_profile(db, user.id)
        changes = payload.model_dump(exclude_unset=True)
        if profile.role != models.UserRole.VETERINARIAN.value and VET_ONLY_FIELDS & changes.keys():
            raise PermissionDeniedError("Only veterinarians have a license number or specialization")
        for name, value in changes.items():
            setattr(profile, name, value)
        db.add(profile)
        commit(db)
        db.refresh(profile)
        return profile

    def update_photo(self, db: Session, user: models.User, file: UploadFile) -> Tuple[models.Profile, UploadOutcome]:
        profile = get_profile(db, user.id)
        outcome = self.uploads.upload_files([file], bucket="animal-images", folder=user.id, max_files=1)
        if outcome.urls:
            profile.profile_image_url = outcome.urls[0]
            db.add(profile)
            commit(db)
            db.refresh(profile)
            logger.info("Profile photo updated for user %s", user.id)
        return profile, outcome
