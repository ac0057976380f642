from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, time, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from medtracker.service.auth import AuthResult, MIN_PASSWORD_LENGTH
from medtracker.service.medicines import MedicineDraft
from medtracker.storage.models import (
    Frequency,
    GlobalMedicine,
    Ingredient,
    Medicine,
    MedicineStatus,
    Profile,
    Schedule,
)

MAX_NAME_LENGTH = 200
MAX_TEXT_LENGTH = 4000
MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "forbidden",
    "ownership_violation",
    "not_found",
    "conflict",
    "duplicate_email",
    "duplicate_profile",
    "duplicate_schedule",
    "invalid_operation",
    "upload_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _require_text(value: str, field_name: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError(f"{field_name} must not be blank")
    return cleaned


# requests


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordRequest(BaseModel):
    email: str
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class FcmTokenRequest(BaseModel):
    fcm_token: str = Field(..., min_length=1, max_length=4096)

    @field_validator("fcm_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        return _require_text(value, "fcm_token")


class ProfileRequest(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value, "name")


class IngredientSchema(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    strength_value: Optional[float] = Field(default=None, ge=0)
    strength_unit: Optional[str] = Field(default=None, max_length=32)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value, "name")


class MedicineRequest(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    quantity: int = Field(..., gt=0)
    expiry_date: date
    image_url: Optional[str] = Field(default=None, max_length=2048)
    dosage: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    category: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    composition: List[IngredientSchema] = Field(default_factory=list, max_length=50)
    form: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value, "name")

    @field_validator("expiry_date")
    @classmethod
    def _validate_expiry(cls, value: date) -> date:
        if value <= datetime.now(timezone.utc).date():
            raise ValueError("expiry_date must be in the future")
        return value


class ScheduleRequest(BaseModel):
    time_of_day: time
    frequency: Optional[Frequency] = None
    is_active: Optional[bool] = None

    @field_validator("time_of_day")
    @classmethod
    def _validate_time(cls, value: time) -> time:
        if value.tzinfo is not None:
            raise ValueError("time_of_day must not carry a timezone")
        return value.replace(microsecond=0)


class GlobalMedicineRequest(BaseModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    brand_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    generic_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    dosage_form: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    strength: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    manufacturer: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    indications: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    contraindications: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    side_effects: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    warnings: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    interactions: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    storage_instructions: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    category: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    atc_code: Optional[str] = Field(default=None, max_length=16)
    fda_approval_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value, "name")


# responses


class AuthResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    email: str
    user_id: str


class ProfileResponse(BaseModel):
    id: str
    user_id: str
    name: str
    created_at: datetime


class IngredientResponse(BaseModel):
    name: str
    strength_value: Optional[float] = None
    strength_unit: Optional[str] = None


class MedicineResponse(BaseModel):
    id: str
    user_id: str
    profile_id: str
    name: str
    image_url: Optional[str] = None
    dosage: Optional[str] = None
    quantity: int
    expiry_date: date
    category: Optional[str] = None
    notes: Optional[str] = None
    composition: List[IngredientResponse] = Field(default_factory=list)
    form: Optional[str] = None
    status: MedicineStatus
    created_at: datetime
    updated_at: datetime


class MedicineWithProfileResponse(MedicineResponse):
    profile_name: str


class ScheduleResponse(BaseModel):
    id: str
    medicine_id: str
    profile_id: str
    user_id: str
    time_of_day: time
    frequency: Frequency
    is_active: bool
    created_at: datetime


class GlobalMedicineResponse(BaseModel):
    id: str
    name: str
    brand_name: Optional[str] = None
    generic_name: Optional[str] = None
    dosage_form: Optional[str] = None
    strength: Optional[str] = None
    manufacturer: Optional[str] = None
    description: Optional[str] = None
    indications: Optional[str] = None
    contraindications: Optional[str] = None
    side_effects: Optional[str] = None
    warnings: Optional[str] = None
    interactions: Optional[str] = None
    storage_instructions: Optional[str] = None
    category: Optional[str] = None
    atc_code: Optional[str] = None
    fda_approval_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime


class ImageUploadResponse(BaseModel):
    url: str


# mapping


def to_auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(token=result.token, email=result.email, user_id=result.user_id)


def to_profile_response(profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        user_id=profile.user_id,
        name=profile.name,
        created_at=profile.created_at,
    )


def _ingredients(medicine: Medicine) -> List[IngredientResponse]:
    return [
        IngredientResponse(
            name=item.name,
            strength_value=item.strength_value,
            strength_unit=item.strength_unit,
        )
        for item in medicine.composition
    ]


def to_medicine_response(medicine: Medicine) -> MedicineResponse:
    return MedicineResponse(
        id=medicine.id,
        user_id=medicine.user_id,
        profile_id=medicine.profile_id,
        name=medicine.name,
        image_url=medicine.image_url,
        dosage=medicine.dosage,
        quantity=medicine.quantity,
        expiry_date=medicine.expiry_date,
        category=medicine.category,
        notes=medicine.notes,
        composition=_ingredients(medicine),
        form=medicine.form,
        status=medicine.status,
        created_at=medicine.created_at,
        updated_at=medicine.updated_at,
    )


def to_medicine_with_profile_response(
    medicine: Medicine, profile_name: str
) -> MedicineWithProfileResponse:
    return MedicineWithProfileResponse(
        **to_medicine_response(medicine).model_dump(),
        profile_name=profile_name,
    )


def to_schedule_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        medicine_id=schedule.medicine_id,
        profile_id=schedule.profile_id,
        user_id=schedule.user_id,
        time_of_day=schedule.time_of_day,
        frequency=schedule.frequency,
        is_active=schedule.is_active,
        created_at=schedule.created_at,
    )


def to_global_medicine_response(entry: GlobalMedicine) -> GlobalMedicineResponse:
    return GlobalMedicineResponse(
        id=entry.id,
        name=entry.name,
        brand_name=entry.brand_name,
        generic_name=entry.generic_name,
        dosage_form=entry.dosage_form,
        strength=entry.strength,
        manufacturer=entry.manufacturer,
        description=entry.description,
        indications=entry.indications,
        contraindications=entry.contraindications,
        side_effects=entry.side_effects,
        warnings=entry.warnings,
        interactions=entry.interactions,
        storage_instructions=entry.storage_instructions,
        category=entry.category,
        atc_code=entry.atc_code,
        fda_approval_date=entry.fda_approval_date,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )


def to_medicine_draft(body: MedicineRequest) -> MedicineDraft:
    return MedicineDraft(
        name=body.name,
        quantity=body.quantity,
        expiry_date=body.expiry_date,
        image_url=body.image_url,
        dosage=body.dosage,
        category=body.category,
        notes=body.notes,
        composition=[
            Ingredient(
                name=item.name,
                strength_value=item.strength_value,
                strength_unit=item.strength_unit,
            )
            for item in body.composition
        ],
        form=body.form,
    )


def to_catalog_fields(body: GlobalMedicineRequest) -> dict:
    return body.model_dump()
