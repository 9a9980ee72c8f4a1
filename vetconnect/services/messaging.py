"""Consultation messages between the farmer and the assigned veterinarian."""
from __future__ import annotations

import logging
from typing import List

from sqlalchemy.orm import Session

from .. import models, schemas
from ..database import commit
from ..errors import ErrorCategory, NotFoundError, PermissionDeniedError, ServiceError
from .consultations import is_participant
from .realtime import RealtimeBroker, broker as default_broker

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "consultation_messages"


def to_record(message: models.ConsultationMessage, sender_name: str | None = None) -> schemas.MessageRead:
    return schemas.MessageRead(
        id=message.id,
        consultation_id=message.consultation_id,
        sender_id=message.sender_id,
        sender_name=sender_name,
        message=message.message,
        attachment_url=message.attachment_url,
        created_at=message.created_at,
    )


class MessagingService:
    def __init__(self, broker: RealtimeBroker | None = None) -> None:
        self.broker = broker or default_broker

    def get_consultation_for(self, db: Session, user: models.User, consultation_id: str) -> models.Consultation:
        """Return the consultation if ``user`` takes part in it."""

        consultation = db.get(models.Consultation, consultation_id)
        if not consultation:
            raise NotFoundError("Consultation not found")
        if not is_participant(consultation, user.id):
            raise PermissionDeniedError("Only consultation participants can read or send messages")
        return consultation

    def list_messages(self, db: Session, user: models.User, consultation_id: str) -> List[schemas.MessageRead]:
        self.get_consultation_for(db, user, consultation_id)
        messages = (
            db.query(models.ConsultationMessage)
            .filter(models.ConsultationMessage.consultation_id == consultation_id)
            .order_by(models.ConsultationMessage.created_at.asc())
            .all()
        )
        sender_ids = {m.sender_id for m in messages}
        names = {}
        if sender_ids:
            rows = (
                db.query(models.Profile.user_id, models.Profile.full_name)
                .filter(models.Profile.user_id.in_(sender_ids))
                .all()
            )
            names = {user_id: full_name for user_id, full_name in rows}
        return [to_record(m, names.get(m.sender_id)) for m in messages]

    def send_message(
        self, db: Session, user: models.User, consultation_id: str, payload: schemas.MessageCreate
    ) -> schemas.MessageRead:
        self.get_consultation_for(db, user, consultation_id)
        text = payload.message.strip()
        if not text:
            raise ServiceError(
                "empty_message", "message is blank", status=422, category=ErrorCategory.VALIDATION
            )

        message = models.ConsultationMessage(
            consultation_id=consultation_id,
            sender_id=user.id,
            message=text,
            attachment_url=payload.attachment_url,
        )
        db.add(message)
        commit(db)
        db.refresh(message)

        profile = db.query(models.Profile).filter(models.Profile.user_id == user.id).first()
        record = to_record(message, profile.full_name if profile else None)
        delivered = self.broker.publish_insert(MESSAGES_TABLE, record.model_dump(mode="json"))
        logger.debug("Message %s delivered to %d subscriber(s)", message.id, delivered)
        return record
