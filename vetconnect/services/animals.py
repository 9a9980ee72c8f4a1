"""Animal records, always scoped to their owner."""
from __future__ import annotations

from typing import List, Tuple

from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import commit
from ..errors import NotFoundError
from .storage import FileUploadService, UploadFile, UploadOutcome


class AnimalService:
    def __init__(self, uploads: FileUploadService | None = None) -> None:
        self.uploads = uploads or FileUploadService()

    def list_animals(self, db: Session, owner: models.User) -> List[models.Animal]:
        return (
            db.query(models.Animal)
            .filter(models.Animal.owner_id == owner.id)
            .order_by(models.Animal.created_at.desc())
            .all()
        )

    def get_animal(self, db: Session, owner: models.User, animal_id: str) -> models.Animal:
        animal = (
            db.query(models.Animal)
            .filter(models.Animal.id == animal_id, models.Animal.owner_id == owner.id)
            .first()
        )
        if not animal:
            raise NotFoundError("Animal not found")
        return animal

    def create_animal(self, db: Session, owner: models.User, payload: schemas.AnimalCreate) -> models.Animal:
        data = payload.model_dump()
        data["animal_type"] = payload.animal_type.value
        animal = models.Animal(owner_id=owner.id, **data)
        db.add(animal)
        commit(db)
        db.refresh(animal)
        return animal

    def update_animal(
        self, db: Session, owner: models.User, animal_id: str, payload: schemas.AnimalUpdate
    ) -> models.Animal:
        animal = self.get_animal(db, owner, animal_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            if name == "animal_type" and value is not None:
                value = value.value
            setattr(animal, name, value)
        db.add(animal)
        commit(db)
        db.refresh(animal)
        return animal

    def delete_animal(self, db: Session, owner: models.User, animal_id: str) -> None:
        animal = self.get_animal(db, owner, animal_id)
        db.delete(animal)
        commit(db)

    def attach_image(
        self, db: Session, owner: models.User, animal_id: str, file: UploadFile
    ) -> Tuple[models.Animal, UploadOutcome]:
        animal = self.get_animal(db, owner, animal_id)
        outcome = self.uploads.upload_files([file], bucket="animal-images", folder=owner.id, max_files=1)
        if outcome.urls:
            animal.image_url = outcome.urls[0]
            db.add(animal)
            commit(db)
            db.refresh(animal)
        return animal, outcome
