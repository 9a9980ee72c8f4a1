"""Portfolio entries a veterinarian shows on their public profile."""
from __future__ import annotations

from typing import List, Tuple

from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import commit
from ..errors import NotFoundError
from .profiles import require_role
from .storage import FileUploadService, UploadFile, UploadOutcome


class PortfolioService:
    def __init__(self, uploads: FileUploadService | None = None) -> None:
        self.uploads = uploads or FileUploadService()

    def list_items(self, db: Session, vet: models.User) -> List[models.VetPortfolio]:
        require_role(db, vet, models.UserRole.VETERINARIAN)
        return (
            db.query(models.VetPortfolio)
            .filter(models.VetPortfolio.vet_id == vet.id)
            .order_by(models.VetPortfolio.created_at.desc())
            .all()
        )

    def create_item(self, db: Session, vet: models.User, payload: schemas.PortfolioCreate) -> models.VetPortfolio:
        require_role(db, vet, models.UserRole.VETERINARIAN)
        item = models.VetPortfolio(vet_id=vet.id, **payload.model_dump())
        db.add(item)
        commit(db)
        db.refresh(item)
        return item

    def update_item(
        self, db: Session, vet: models.User, item_id: str, payload: schemas.PortfolioUpdate
    ) -> models.VetPortfolio:
        item = self._get_owned(db, vet, item_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            if name == "title" and value is None:
                continue
            setattr(item, name, value)
        db.add(item)
        commit(db)
        db.refresh(item)
        return item

    def delete_item(self, db: Session, vet: models.User, item_id: str) -> None:
        item = self._get_owned(db, vet, item_id)
        db.delete(item)
        commit(db)

    def attach_image(
        self, db: Session, vet: models.User, item_id: str, file: UploadFile
    ) -> Tuple[models.VetPortfolio, UploadOutcome]:
        item = self._get_owned(db, vet, item_id)
        outcome = self.uploads.upload_files([file], bucket="portfolio-images", folder=vet.id, max_files=1)
        if outcome.urls:
            item.image_url = outcome.urls[0]
            db.add(item)
            commit(db)
            db.refresh(item)
        return item, outcome

    def _get_owned(self, db: Session, vet: models.User, item_id: str) -> models.VetPortfolio:
        require_role(db, vet, models.UserRole.VETERINARIAN)
        item = (
            db.query(models.VetPortfolio)
            .filter(models.VetPortfolio.id == item_id, models.VetPortfolio.vet_id == vet.id)
            .first()
        )
        if not item:
            raise NotFoundError("Portfolio item not found")
        return item
