"""SQLAlchemy models for accounts, animals, consultations and portfolios."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    FARMER = "farmer"
    PET_OWNER = "pet_owner"
    VETERINARIAN = "veterinarian"
    ADMIN = "admin"


class AnimalType(str, Enum):
    POULTRY = "poultry"
    CATTLE = "cattle"
    GOAT = "goat"
    SHEEP = "sheep"
    PIG = "pig"
    DOG = "dog"
    CAT = "cat"
    OTHER = "other"


class ConsultationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class UrgencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


# -------------------- Identity --------------------
class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_sign_in_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    mfa_factors = relationship("MfaFactor", back_populates="user", cascade="all, delete-orphan")
    auth_logs = relationship("AuthLog", back_populates="user")


class MfaFactor(Base):
    __tablename__ = "mfa_factors"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    factor_type = Column(String(16), default="totp", nullable=False)
    friendly_name = Column(String(128))
    secret = Column(String(64), nullable=False)
    status = Column(String(16), default="unverified", nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user = relationship("User", back_populates="mfa_factors")
    challenges = relationship("MfaChallenge", back_populates="factor", cascade="all, delete-orphan")


class MfaChallenge(Base):
    __tablename__ = "mfa_challenges"

    id = Column(String(36), primary_key=True, default=_uuid)
    factor_id = Column(String(36), ForeignKey("mfa_factors.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    factor = relationship("MfaFactor", back_populates="challenges")


class EmailOtp(Base):
    __tablename__ = "email_otps"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, nullable=False, index=True)
    code_hash = Column(String(128), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class AuthLog(Base):
    __tablename__ = "auth_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"))
    event_type = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    ip_address = Column(String(64))
    user_agent = Column(Text)
    details = Column(JSON)

    user = relationship("User", back_populates="auth_logs")


# -------------------- Domain --------------------
class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    full_name = Column(String, nullable=False)
    role = Column(String(32), default=UserRole.FARMER.value, nullable=False)
    bio = Column(Text)
    location = Column(String)
    phone_number = Column(String(32))
    license_number = Column(String(64))
    specialization = Column(String)
    profile_image_url = Column(Text)
    latitude = Column(Float)
    longitude = Column(Float)
    is_available = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="profile")


class Animal(Base):
    __tablename__ = "animals"
    __table_args__ = (
        CheckConstraint("age_months IS NULL OR (age_months >= 0 AND age_months <= 11)", name="ck_animals_age_months"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String)
    animal_type = Column(String(32), nullable=False)
    breed = Column(String)
    age_years = Column(Integer)
    age_months = Column(Integer)
    weight_kg = Column(Float)
    medical_history = Column(Text)
    vaccination_records = Column(Text)
    image_url = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(String(36), primary_key=True, default=_uuid)
    farmer_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    animal_id = Column(String(36), ForeignKey("animals.id", ondelete="CASCADE"), nullable=False)
    vet_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    subject = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    symptoms = Column(Text)
    urgency_level = Column(String(16), nullable=False)
    status = Column(String(16), default=ConsultationStatus.PENDING.value, nullable=False, index=True)
    image_urls = Column(JSON)
    diagnosis = Column(Text)
    treatment_plan = Column(Text)
    follow_up_notes = Column(Text)
    scheduled_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    messages = relationship("ConsultationMessage", back_populates="consultation", cascade="all, delete-orphan")


class ConsultationMessage(Base):
    __tablename__ = "consultation_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    consultation_id = Column(
        String(36), ForeignKey("consultations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(Text, nullable=False)
    attachment_url = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    consultation = relationship("Consultation", back_populates="messages")


class VetPortfolio(Base):
    __tablename__ = "vet_portfolios"

    id = Column(String(36), primary_key=True, default=_uuid)
    vet_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String)
    image_url = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
