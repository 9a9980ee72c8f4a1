"""Pydantic schemas for request and response payloads."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import AnimalType, ConsultationStatus, UrgencyLevel

SignUpRole = Literal["farmer", "pet_owner", "veterinarian"]


class Message(BaseModel):
    detail: str


# -------------------- Auth --------------------
class RegisterRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=128)
    email: EmailStr
    password: str = Field(min_length=6)
    confirm_password: str
    role: SignUpRole = "farmer"

    @field_validator("full_name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name must be at least 2 characters")
        return value

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)


class TotpVerifyRequest(BaseModel):
    email: EmailStr
    factor_id: str
    challenge_id: str
    code: str = Field(pattern=r"^\d{6}$")


class OtpSendRequest(BaseModel):
    email: EmailStr


class OtpVerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(pattern=r"^\d{6}$")


class MfaEnrollRequest(BaseModel):
    friendly_name: str = Field(default="Google Authenticator", max_length=128)


class MfaVerifyRequest(BaseModel):
    factor_id: str
    code: str = Field(pattern=r"^\d{6}$")


class MfaEnrollResponse(BaseModel):
    factor_id: str
    secret: str
    otpauth_uri: str


class MfaFactorRead(BaseModel):
    id: str
    factor_type: str
    friendly_name: Optional[str]
    status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    detail: str
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    assurance_level: Optional[str] = None
    mfa_required: bool = False
    factor_id: Optional[str] = None
    challenge_id: Optional[str] = None


class RateLimitStatus(BaseModel):
    limited: bool
    remaining_seconds: int
    remaining_attempts: int
    message: str


# -------------------- Profiles --------------------
class ProfileRead(BaseModel):
    id: str
    user_id: str
    full_name: str
    role: str
    bio: Optional[str]
    location: Optional[str]
    phone_number: Optional[str]
    license_number: Optional[str]
    specialization: Optional[str]
    profile_image_url: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    is_available: Optional[bool]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=128)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    bio: Optional[str] = None
    location: Optional[str] = None
    specialization: Optional[str] = None
    license_number: Optional[str] = Field(default=None, max_length=64)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    is_available: Optional[bool] = None

    @field_validator("full_name")
    @classmethod
    def full_name_not_null(cls, value: Optional[str]) -> str:
        if value is None:
            raise ValueError("Name is required")
        return value


# -------------------- Animals --------------------
class AnimalBase(BaseModel):
    name: str = Field(min_length=1, description="Name is required")
    animal_type: AnimalType
    breed: Optional[str] = None
    age_years: Optional[int] = Field(default=None, ge=0)
    age_months: Optional[int] = Field(default=None, ge=0, le=11)
    weight_kg: Optional[float] = Field(default=None, ge=0)
    medical_history: Optional[str] = None
    vaccination_records: Optional[str] = None


class AnimalCreate(AnimalBase):
    pass


class AnimalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    animal_type: Optional[AnimalType] = None
    breed: Optional[str] = None
    age_years: Optional[int] = Field(default=None, ge=0)
    age_months: Optional[int] = Field(default=None, ge=0, le=11)
    weight_kg: Optional[float] = Field(default=None, ge=0)
    medical_history: Optional[str] = None
    vaccination_records: Optional[str] = None

    @field_validator("name", "animal_type")
    @classmethod
    def required_not_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name.replace('_', ' ').capitalize()} is required")
        return value


class AnimalRead(BaseModel):
    id: str
    owner_id: str
    name: Optional[str]
    animal_type: str
    breed: Optional[str]
    age_years: Optional[int]
    age_months: Optional[int]
    weight_kg: Optional[float]
    medical_history: Optional[str]
    vaccination_records: Optional[str]
    image_url: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -------------------- Consultations --------------------
class ConsultationCreate(BaseModel):
    subject: str = Field(min_length=5)
    description: str = Field(min_length=20)
    symptoms: Optional[str] = None
    urgency_level: UrgencyLevel
    animal_id: uuid.UUID


class ConsultationUpdate(BaseModel):
    status: Optional[ConsultationStatus] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    follow_up_notes: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class ConsultationRead(BaseModel):
    id: str
    farmer_id: str
    animal_id: str
    vet_id: Optional[str]
    subject: str
    description: str
    symptoms: Optional[str]
    urgency_level: str
    status: str
    image_urls: Optional[List[str]]
    diagnosis: Optional[str]
    treatment_plan: Optional[str]
    follow_up_notes: Optional[str]
    scheduled_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConsultationCreateResponse(BaseModel):
    consultation: ConsultationRead
    upload_errors: List[str] = Field(default_factory=list)


class DashboardStats(BaseModel):
    total: int
    pending: int
    in_progress: int
    completed: int


class FarmerDashboard(BaseModel):
    consultations: List[ConsultationRead]
    animals: List[AnimalRead]
    stats: DashboardStats


class VetDashboard(BaseModel):
    pending: List[ConsultationRead]
    mine: List[ConsultationRead]
    stats: DashboardStats
    profile: Optional[ProfileRead]


# -------------------- Messaging --------------------
class MessageCreate(BaseModel):
    message: str = Field(max_length=5000)
    attachment_url: Optional[str] = None


class MessageRead(BaseModel):
    id: str
    consultation_id: str
    sender_id: str
    sender_name: Optional[str] = None
    message: str
    attachment_url: Optional[str] = None
    created_at: datetime


# -------------------- Vets --------------------
class VetPublic(BaseModel):
    id: str
    user_id: str
    full_name: str
    location: Optional[str]
    bio: Optional[str]
    specialization: Optional[str]
    profile_image_url: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    is_available: Optional[bool]
    phone_number: None = None
    license_number: None = None
    is_online: bool = False
    online_at: Optional[str] = None


class PortfolioRead(BaseModel):
    id: str
    vet_id: str
    title: str
    description: Optional[str]
    category: Optional[str]
    image_url: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PortfolioCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Title is required")
        return value.strip()


class PortfolioUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None


class VetProfileDetail(BaseModel):
    vet: VetPublic
    portfolio: List[PortfolioRead]


class MapMarker(BaseModel):
    vet_id: str
    user_id: str
    title: str
    lat: float
    lng: float
    color: str
    is_online: bool


class MapViewport(BaseModel):
    mode: Literal["fit_bounds", "center", "none"]
    center: Optional[dict[str, float]] = None
    zoom: Optional[int] = None
    bounds: Optional[dict[str, float]] = None
    padding: Optional[int] = None


class MapView(BaseModel):
    markers: List[MapMarker]
    viewport: MapViewport


class MapSyncRequest(BaseModel):
    markers: List[MapMarker] = Field(default_factory=list)
    q: Optional[str] = None
    selected: Optional[str] = None


class MapSync(BaseModel):
    view: MapView
    added: List[str]
    moved: List[str]
    removed: List[str]


class OnlineVet(BaseModel):
    id: str
    user_id: str
    full_name: str
    online_at: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class PresenceTrack(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class UploadResult(BaseModel):
    urls: List[str]
    errors: List[str] = Field(default_factory=list)

