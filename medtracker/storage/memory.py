from __future__ import annotations

import copy
import json
import threading
from dataclasses import replace
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

from medtracker.logging import get_logger
from medtracker.storage.errors import ConstraintViolation
from medtracker.storage.models import (
    CATALOG_FIELDS,
    MEDICINE_FIELDS,
    Frequency,
    GlobalMedicine,
    Ingredient,
    Medicine,
    MedicineStatus,
    Profile,
    RevokedToken,
    Schedule,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """Dict-backed store persisted to a JSON snapshot under ``fs_root``.

    Every read and write goes through ``_data_lock`` so check-then-act sequences
    (unique names, active schedule slots, take-dose) are atomic within the
    process. Returned objects are copies; mutating them never touches the store.
    """

    def __init__(self, fs_root: str = "/tmp/medtracker") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.profiles: Dict[str, Profile] = {}
        self.medicines: Dict[str, Medicine] = {}
        self.schedules: Dict[str, Schedule] = {}
        self.revoked_tokens: Dict[str, RevokedToken] = {}
        self.global_medicines: Dict[str, GlobalMedicine] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "medtracker_store.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self, email: str, password_hash: str, password_last_changed: datetime
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                password_last_changed=password_last_changed,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(user)

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_last_changed = changed_at
            self._persist_state()
            return copy.deepcopy(user)

    def update_fcm_token(self, user_id: str, fcm_token: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.fcm_token = fcm_token
            self._persist_state()
            return copy.deepcopy(user)

    # profiles
    def create_profile(self, user_id: str, name: str) -> Profile:
        with self._data_lock:
            if self._profile_named(user_id, name) is not None:
                raise ConstraintViolation("profile name already exists", {"field": "name"})
            profile = Profile(id=new_id(), user_id=user_id, name=name)
            self.profiles[profile.id] = profile
            self._persist_state()
            return copy.deepcopy(profile)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._data_lock:
            return copy.deepcopy(self.profiles.get(profile_id))

    def list_profiles(self, user_id: str) -> List[Profile]:
        with self._data_lock:
            owned = [p for p in self.profiles.values() if p.user_id == user_id]
            owned.sort(key=lambda p: p.created_at)
            return copy.deepcopy(owned)

    def _profile_named(self, user_id: str, name: str) -> Optional[Profile]:
        return next(
            (
                p
                for p in self.profiles.values()
                if p.user_id == user_id and p.name == name
            ),
            None,
        )

    def find_profile_by_name(self, user_id: str, name: str) -> Optional[Profile]:
        with self._data_lock:
            return copy.deepcopy(self._profile_named(user_id, name))

    def rename_profile(self, profile_id: str, name: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                return None
            clash = self._profile_named(profile.user_id, name)
            if clash is not None and clash.id != profile_id:
                raise ConstraintViolation("profile name already exists", {"field": "name"})
            profile.name = name
            self._persist_state()
            return copy.deepcopy(profile)

    def cascade_delete_profile(self, profile_id: str) -> bool:
        with self._data_lock:
            if profile_id not in self.profiles:
                return False
            for schedule_id in [
                s.id for s in self.schedules.values() if s.profile_id == profile_id
            ]:
                del self.schedules[schedule_id]
            now = utcnow()
            for medicine in self.medicines.values():
                if medicine.profile_id == profile_id:
                    medicine.status = MedicineStatus.INACTIVE
                    medicine.updated_at = now
            del self.profiles[profile_id]
            self._persist_state()
            return True

    # medicines
    def create_medicine(self, medicine: Medicine) -> Medicine:
        with self._data_lock:
            stored = copy.deepcopy(medicine)
            self.medicines[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_medicine(self, medicine_id: str) -> Optional[Medicine]:
        with self._data_lock:
            return copy.deepcopy(self.medicines.get(medicine_id))

    def list_medicines(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        status: Optional[MedicineStatus] = MedicineStatus.ACTIVE,
    ) -> List[Medicine]:
        with self._data_lock:
            results = [
                m
                for m in self.medicines.values()
                if m.user_id == user_id
                and (profile_id is None or m.profile_id == profile_id)
                and (status is None or m.status == status)
            ]
            results.sort(key=lambda m: m.created_at)
            return copy.deepcopy(results)

    def update_medicine(
        self, medicine_id: str, fields: Dict[str, Any]
    ) -> Optional[Medicine]:
        with self._data_lock:
            medicine = self.medicines.get(medicine_id)
            if not medicine:
                return None
            for key, value in fields.items():
                if key in MEDICINE_FIELDS:
                    setattr(medicine, key, copy.deepcopy(value))
            medicine.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(medicine)

    def set_medicine_status(
        self, medicine_id: str, status: MedicineStatus
    ) -> Optional[Medicine]:
        with self._data_lock:
            medicine = self.medicines.get(medicine_id)
            if not medicine:
                return None
            medicine.status = status
            medicine.updated_at = utcnow()
            if status != MedicineStatus.ACTIVE:
                for schedule in self.schedules.values():
                    if schedule.medicine_id == medicine_id:
                        schedule.is_active = False
            self._persist_state()
            return copy.deepcopy(medicine)

    def decrement_medicine_quantity(self, medicine_id: str) -> Optional[Medicine]:
        with self._data_lock:
            medicine = self.medicines.get(medicine_id)
            if not medicine or not medicine.is_active or medicine.quantity <= 0:
                return None
            medicine.quantity -= 1
            medicine.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(medicine)

    def list_expiring_medicines(self, until: date) -> List[Medicine]:
        with self._data_lock:
            results = [
                m
                for m in self.medicines.values()
                if m.is_active and m.expiry_date <= until
            ]
            results.sort(key=lambda m: m.expiry_date)
            return copy.deepcopy(results)

    # schedules
    def _active_slot_holder(
        self,
        medicine_id: str,
        time_of_day: time,
        frequency: Frequency,
        exclude_id: Optional[str] = None,
    ) -> Optional[Schedule]:
        for schedule in self.schedules.values():
            if (
                schedule.is_active
                and schedule.id != exclude_id
                and schedule.slot() == (medicine_id, time_of_day, frequency)
            ):
                return schedule
        return None

    def create_schedule(self, schedule: Schedule) -> Schedule:
        with self._data_lock:
            if schedule.is_active and self._active_slot_holder(
                schedule.medicine_id, schedule.time_of_day, schedule.frequency
            ):
                raise ConstraintViolation(
                    "active schedule already exists", {"field": "time_of_day"}
                )
            stored = copy.deepcopy(schedule)
            self.schedules[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        with self._data_lock:
            return copy.deepcopy(self.schedules.get(schedule_id))

    def list_schedules(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        medicine_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Schedule]:
        with self._data_lock:
            results = [
                s
                for s in self.schedules.values()
                if s.user_id == user_id
                and (profile_id is None or s.profile_id == profile_id)
                and (medicine_id is None or s.medicine_id == medicine_id)
                and (s.is_active or not active_only)
            ]
            results.sort(key=lambda s: (s.time_of_day, s.created_at))
            return copy.deepcopy(results)

    def find_active_schedule(
        self,
        medicine_id: str,
        time_of_day: time,
        frequency: Frequency,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[Schedule]:
        with self._data_lock:
            return copy.deepcopy(
                self._active_slot_holder(medicine_id, time_of_day, frequency, exclude_id)
            )

    def update_schedule(
        self,
        schedule_id: str,
        *,
        time_of_day: time,
        frequency: Frequency,
        is_active: bool,
    ) -> Optional[Schedule]:
        with self._data_lock:
            schedule = self.schedules.get(schedule_id)
            if not schedule:
                return None
            if is_active and self._active_slot_holder(
                schedule.medicine_id, time_of_day, frequency, exclude_id=schedule_id
            ):
                raise ConstraintViolation(
                    "active schedule already exists", {"field": "time_of_day"}
                )
            schedule.time_of_day = time_of_day
            schedule.frequency = frequency
            schedule.is_active = is_active
            self._persist_state()
            return copy.deepcopy(schedule)

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._data_lock:
            if self.schedules.pop(schedule_id, None) is None:
                return False
            self._persist_state()
            return True

    def list_active_schedules_at(self, hour: int, minute: int) -> List[Schedule]:
        with self._data_lock:
            return copy.deepcopy(
                [
                    s
                    for s in self.schedules.values()
                    if s.is_active
                    and s.time_of_day.hour == hour
                    and s.time_of_day.minute == minute
                ]
            )

    # revoked tokens
    def add_revoked_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RevokedToken:
        with self._data_lock:
            existing = self.revoked_tokens.get(token_hash)
            if existing:
                return copy.deepcopy(existing)
            record = RevokedToken(token=token_hash, user_id=user_id, expires_at=expires_at)
            self.revoked_tokens[token_hash] = record
            self._persist_state()
            return copy.deepcopy(record)

    def is_token_revoked(self, token_hash: str) -> bool:
        with self._data_lock:
            return token_hash in self.revoked_tokens

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, v in self.revoked_tokens.items() if v.expires_at < now]
            for key in expired:
                del self.revoked_tokens[key]
            if expired:
                self._persist_state()
            return len(expired)

    # global medicine catalog
    def create_global_medicine(self, entry: GlobalMedicine) -> GlobalMedicine:
        with self._data_lock:
            stored = copy.deepcopy(entry)
            self.global_medicines[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_global_medicine(self, entry_id: str) -> Optional[GlobalMedicine]:
        with self._data_lock:
            return copy.deepcopy(self.global_medicines.get(entry_id))

    def list_global_medicines(self) -> List[GlobalMedicine]:
        with self._data_lock:
            return copy.deepcopy(
                sorted(self.global_medicines.values(), key=lambda g: g.name.lower())
            )

    def search_global_medicines(self, name_fragment: str) -> List[GlobalMedicine]:
        needle = name_fragment.lower()
        return [g for g in self.list_global_medicines() if needle in g.name.lower()]

    def list_global_medicines_by_category(self, category: str) -> List[GlobalMedicine]:
        return [g for g in self.list_global_medicines() if g.category == category]

    def update_global_medicine(
        self, entry_id: str, fields: Dict[str, Any]
    ) -> Optional[GlobalMedicine]:
        with self._data_lock:
            entry = self.global_medicines.get(entry_id)
            if not entry:
                return None
            updated = replace(
                entry,
                **{k: v for k, v in fields.items() if k in CATALOG_FIELDS},
                updated_at=utcnow(),
            )
            self.global_medicines[entry_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def delete_global_medicine(self, entry_id: str) -> bool:
        with self._data_lock:
            if self.global_medicines.pop(entry_id, None) is None:
                return False
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @staticmethod
    def _optional_date(raw: Optional[str]) -> Optional[date]:
        return date.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "profiles": [self._serialize_profile(p) for p in self.profiles.values()],
                "medicines": [
                    self._serialize_medicine(m) for m in self.medicines.values()
                ],
                "schedules": [
                    self._serialize_schedule(s) for s in self.schedules.values()
                ],
                "revoked_tokens": [
                    self._serialize_revoked_token(r)
                    for r in self.revoked_tokens.values()
                ],
                "global_medicines": [
                    self._serialize_global_medicine(g)
                    for g in self.global_medicines.values()
                ],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {
                u["id"]: self._deserialize_user(u) for u in data.get("users", [])
            }
            self.profiles = {
                p["id"]: self._deserialize_profile(p) for p in data.get("profiles", [])
            }
            self.medicines = {
                m["id"]: self._deserialize_medicine(m)
                for m in data.get("medicines", [])
            }
            self.schedules = {
                s["id"]: self._deserialize_schedule(s)
                for s in data.get("schedules", [])
            }
            self.revoked_tokens = {
                r["token"]: self._deserialize_revoked_token(r)
                for r in data.get("revoked_tokens", [])
            }
            self.global_medicines = {
                g["id"]: self._deserialize_global_medicine(g)
                for g in data.get("global_medicines", [])
            }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            profiles=len(self.profiles),
            medicines=len(self.medicines),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_last_changed": self._serialize_datetime(user.password_last_changed),
            "fcm_token": user.fcm_token,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            password_last_changed=self._deserialize_datetime(data["password_last_changed"]),
            fcm_token=data.get("fcm_token"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_profile(self, profile: Profile) -> dict:
        return {
            "id": profile.id,
            "user_id": profile.user_id,
            "name": profile.name,
            "created_at": self._serialize_datetime(profile.created_at),
        }

    def _deserialize_profile(self, data: dict) -> Profile:
        return Profile(
            id=str(data["id"]),
            user_id=data["user_id"],
            name=data["name"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_medicine(self, medicine: Medicine) -> dict:
        return {
            "id": medicine.id,
            "user_id": medicine.user_id,
            "profile_id": medicine.profile_id,
            "name": medicine.name,
            "quantity": medicine.quantity,
            "expiry_date": medicine.expiry_date.isoformat(),
            "image_url": medicine.image_url,
            "dosage": medicine.dosage,
            "category": medicine.category,
            "notes": medicine.notes,
            "composition": [
                {
                    "name": item.name,
                    "strength_value": item.strength_value,
                    "strength_unit": item.strength_unit,
                }
                for item in medicine.composition
            ],
            "form": medicine.form,
            "status": medicine.status.value,
            "created_at": self._serialize_datetime(medicine.created_at),
            "updated_at": self._serialize_datetime(medicine.updated_at),
        }

    def _deserialize_medicine(self, data: dict) -> Medicine:
        return Medicine(
            id=str(data["id"]),
            user_id=data["user_id"],
            profile_id=data["profile_id"],
            name=data["name"],
            quantity=int(data["quantity"]),
            expiry_date=date.fromisoformat(data["expiry_date"]),
            image_url=data.get("image_url"),
            dosage=data.get("dosage"),
            category=data.get("category"),
            notes=data.get("notes"),
            composition=[Ingredient(**item) for item in data.get("composition", [])],
            form=data.get("form"),
            status=MedicineStatus(data.get("status", MedicineStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_schedule(self, schedule: Schedule) -> dict:
        return {
            "id": schedule.id,
            "medicine_id": schedule.medicine_id,
            "profile_id": schedule.profile_id,
            "user_id": schedule.user_id,
            "time_of_day": schedule.time_of_day.isoformat(),
            "frequency": schedule.frequency.value,
            "is_active": schedule.is_active,
            "created_at": self._serialize_datetime(schedule.created_at),
        }

    def _deserialize_schedule(self, data: dict) -> Schedule:
        return Schedule(
            id=str(data["id"]),
            medicine_id=data["medicine_id"],
            profile_id=data["profile_id"],
            user_id=data["user_id"],
            time_of_day=time.fromisoformat(data["time_of_day"]),
            frequency=Frequency(data.get("frequency", Frequency.DAILY.value)),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_revoked_token(self, record: RevokedToken) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
        }

    def _deserialize_revoked_token(self, data: dict) -> RevokedToken:
        return RevokedToken(
            token=data["token"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data["revoked_at"]),
        )

    def _serialize_global_medicine(self, entry: GlobalMedicine) -> dict:
        payload = {name: getattr(entry, name) for name in CATALOG_FIELDS}
        payload["fda_approval_date"] = (
            entry.fda_approval_date.isoformat() if entry.fda_approval_date else None
        )
        payload["id"] = entry.id
        payload["created_at"] = self._serialize_datetime(entry.created_at)
        payload["updated_at"] = self._serialize_datetime(entry.updated_at)
        return payload

    def _deserialize_global_medicine(self, data: dict) -> GlobalMedicine:
        fields = {name: data.get(name) for name in CATALOG_FIELDS}
        fields["fda_approval_date"] = self._optional_date(data.get("fda_approval_date"))
        return GlobalMedicine(
            id=str(data["id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            **fields,
        )
