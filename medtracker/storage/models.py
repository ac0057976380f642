from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MedicineStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    password_last_changed: datetime
    fcm_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Profile:
    id: str
    user_id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Ingredient:
    name: str
    strength_value: Optional[float] = None
    strength_unit: Optional[str] = None


@dataclass
class Medicine:
    id: str
    user_id: str
    profile_id: str
    name: str
    quantity: int
    expiry_date: date
    image_url: Optional[str] = None
    dosage: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    composition: List[Ingredient] = field(default_factory=list)
    form: Optional[str] = None
    status: MedicineStatus = MedicineStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == MedicineStatus.ACTIVE


@dataclass
class Schedule:
    id: str
    medicine_id: str
    profile_id: str
    user_id: str
    time_of_day: time
    frequency: Frequency = Frequency.DAILY
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def slot(self) -> tuple:
        """Key that must be unique among a medicine's active schedules."""
        return (self.medicine_id, self.time_of_day, self.frequency)


@dataclass
class RevokedToken:
    token: str
    user_id: str
    expires_at: datetime
    revoked_at: datetime = field(default_factory=utcnow)


@dataclass
class GlobalMedicine:
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
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Fields a catalog update may touch
CATALOG_FIELDS = (
    "name",
    "brand_name",
    "generic_name",
    "dosage_form",
    "strength",
    "manufacturer",
    "description",
    "indications",
    "contraindications",
    "side_effects",
    "warnings",
    "interactions",
    "storage_instructions",
    "category",
    "atc_code",
    "fda_approval_date",
)

# Fields a medicine update may touch
MEDICINE_FIELDS = (
    "name",
    "image_url",
    "dosage",
    "quantity",
    "expiry_date",
    "category",
    "notes",
    "composition",
    "form",
)
