"""Persistence contracts shared by the memory and Postgres stores.

Services depend on these protocols rather than on a concrete store, so tests
can run against ``MemoryStore`` while production runs on ``PostgresStore``.
Lookups return ``None`` for missing rows; uniqueness failures raise
``ConstraintViolation``.
"""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Protocol

from medtracker.storage.models import (
    Frequency,
    GlobalMedicine,
    Medicine,
    MedicineStatus,
    Profile,
    RevokedToken,
    Schedule,
    User,
)


class UserRepository(Protocol):
    def create_user(
        self, email: str, password_hash: str, password_last_changed: datetime
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]: ...

    def update_fcm_token(self, user_id: str, fcm_token: str) -> Optional[User]: ...


class ProfileRepository(Protocol):
    def create_profile(self, user_id: str, name: str) -> Profile: ...

    def get_profile(self, profile_id: str) -> Optional[Profile]: ...

    def list_profiles(self, user_id: str) -> List[Profile]: ...

    def find_profile_by_name(self, user_id: str, name: str) -> Optional[Profile]: ...

    def rename_profile(self, profile_id: str, name: str) -> Optional[Profile]: ...

    def cascade_delete_profile(self, profile_id: str) -> bool:
        """Hard-delete schedules, deactivate medicines, then drop the profile."""
        ...


class MedicineRepository(Protocol):
    def create_medicine(self, medicine: Medicine) -> Medicine: ...

    def get_medicine(self, medicine_id: str) -> Optional[Medicine]: ...

    def list_medicines(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        status: Optional[MedicineStatus] = MedicineStatus.ACTIVE,
    ) -> List[Medicine]: ...

    def update_medicine(
        self, medicine_id: str, fields: Dict[str, Any]
    ) -> Optional[Medicine]: ...

    def set_medicine_status(
        self, medicine_id: str, status: MedicineStatus
    ) -> Optional[Medicine]:
        """Set the status; leaving ACTIVE also deactivates the medicine's schedules."""
        ...

    def decrement_medicine_quantity(self, medicine_id: str) -> Optional[Medicine]:
        """Atomically take one unit; ``None`` when stock is zero or inactive."""
        ...

    def list_expiring_medicines(self, until: date) -> List[Medicine]: ...


class ScheduleRepository(Protocol):
    def create_schedule(self, schedule: Schedule) -> Schedule: ...

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]: ...

    def list_schedules(
        self,
        user_id: str,
        *,
        profile_id: Optional[str] = None,
        medicine_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Schedule]: ...

    def find_active_schedule(
        self,
        medicine_id: str,
        time_of_day: time,
        frequency: Frequency,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[Schedule]: ...

    def update_schedule(
        self,
        schedule_id: str,
        *,
        time_of_day: time,
        frequency: Frequency,
        is_active: bool,
    ) -> Optional[Schedule]: ...

    def delete_schedule(self, schedule_id: str) -> bool: ...

    def list_active_schedules_at(self, hour: int, minute: int) -> List[Schedule]: ...


class RevokedTokenRepository(Protocol):
    def add_revoked_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RevokedToken: ...

    def is_token_revoked(self, token_hash: str) -> bool: ...

    def purge_revoked_tokens(self, now: datetime) -> int: ...


class GlobalMedicineRepository(Protocol):
    def create_global_medicine(self, entry: GlobalMedicine) -> GlobalMedicine: ...

    def get_global_medicine(self, entry_id: str) -> Optional[GlobalMedicine]: ...

    def list_global_medicines(self) -> List[GlobalMedicine]: ...

    def search_global_medicines(self, name_fragment: str) -> List[GlobalMedicine]: ...

    def list_global_medicines_by_category(
        self, category: str
    ) -> List[GlobalMedicine]: ...

    def update_global_medicine(
        self, entry_id: str, fields: Dict[str, Any]
    ) -> Optional[GlobalMedicine]: ...

    def delete_global_medicine(self, entry_id: str) -> bool: ...


class Store(
    UserRepository,
    ProfileRepository,
    MedicineRepository,
    ScheduleRepository,
    RevokedTokenRepository,
    GlobalMedicineRepository,
    Protocol,
):
    def ping(self) -> bool: ...
