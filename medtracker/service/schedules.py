from __future__ import annotations

from datetime import time
from typing import List, Optional

from medtracker.logging import get_logger
from medtracker.service.auth import Identity
from medtracker.service.errors import DuplicateScheduleError, NotFoundError, OwnershipError
from medtracker.storage.errors import ConstraintViolation
from medtracker.storage.models import Frequency, Schedule, new_id
from medtracker.storage.repositories import (
    MedicineRepository,
    ProfileRepository,
    ScheduleRepository,
)

logger = get_logger(__name__)


class ScheduleService:
    """Dosage schedules hanging off a medicine.

    At most one active schedule may hold a given (medicine, time of day,
    frequency) slot; inactive schedules never conflict.
    """

    def __init__(
        self,
        store: ScheduleRepository,
        medicines: MedicineRepository,
        profiles: ProfileRepository,
    ) -> None:
        self.store = store
        self.medicines = medicines
        self.profiles = profiles

    def _ensure_slot_free(
        self,
        medicine_id: str,
        time_of_day: time,
        frequency: Frequency,
        exclude_id: Optional[str] = None,
    ) -> None:
        if self.store.find_active_schedule(
            medicine_id, time_of_day, frequency, exclude_id=exclude_id
        ):
            raise DuplicateScheduleError(
                "a schedule already exists for this medicine with the same time and frequency",
                detail={"medicine_id": medicine_id},
            )

    def create(
        self,
        identity: Identity,
        medicine_id: str,
        time_of_day: time,
        frequency: Optional[Frequency] = None,
        is_active: Optional[bool] = None,
    ) -> Schedule:
        medicine = self.medicines.get_medicine(medicine_id)
        profile = self.profiles.get_profile(medicine.profile_id) if medicine else None
        if (
            not medicine
            or medicine.user_id != identity.user_id
            or not medicine.is_active
            or not profile
            or profile.user_id != identity.user_id
        ):
            raise OwnershipError(
                "medicine not found or does not belong to user",
                detail={"medicine_id": medicine_id},
            )
        frequency = frequency or Frequency.DAILY
        is_active = True if is_active is None else is_active
        if is_active:
            self._ensure_slot_free(medicine_id, time_of_day, frequency)
        schedule = Schedule(
            id=new_id(),
            medicine_id=medicine_id,
            profile_id=medicine.profile_id,
            user_id=identity.user_id,
            time_of_day=time_of_day,
            frequency=frequency,
            is_active=is_active,
        )
        try:
            created = self.store.create_schedule(schedule)
        except ConstraintViolation as exc:
            raise DuplicateScheduleError(
                "a schedule already exists for this medicine with the same time and frequency",
                detail={"medicine_id": medicine_id},
            ) from exc
        logger.info(
            "schedule_created",
            user_id=identity.user_id,
            medicine_id=medicine_id,
            schedule_id=created.id,
        )
        return created

    def get(self, identity: Identity, schedule_id: str) -> Schedule:
        """Owned schedule whose medicine is still active; inactive schedules included."""
        schedule = self.store.get_schedule(schedule_id)
        if not schedule or schedule.user_id != identity.user_id:
            raise NotFoundError("schedule not found", detail={"schedule_id": schedule_id})
        medicine = self.medicines.get_medicine(schedule.medicine_id)
        profile = self.profiles.get_profile(schedule.profile_id)
        if (
            not medicine
            or medicine.user_id != identity.user_id
            or not medicine.is_active
            or not profile
            or profile.user_id != identity.user_id
        ):
            raise NotFoundError("schedule not found", detail={"schedule_id": schedule_id})
        return schedule

    def list_for_medicine(self, identity: Identity, medicine_id: str) -> List[Schedule]:
        return self.store.list_schedules(identity.user_id, medicine_id=medicine_id)

    def list_for_profile(self, identity: Identity, profile_id: str) -> List[Schedule]:
        return self.store.list_schedules(identity.user_id, profile_id=profile_id)

    def list_for_user(self, identity: Identity) -> List[Schedule]:
        return self.store.list_schedules(identity.user_id)

    def exists_for_user(self, identity: Identity, schedule_id: str) -> bool:
        schedule = self.store.get_schedule(schedule_id)
        return bool(schedule and schedule.user_id == identity.user_id)

    def update(
        self,
        identity: Identity,
        schedule_id: str,
        time_of_day: time,
        frequency: Optional[Frequency] = None,
        is_active: Optional[bool] = None,
    ) -> Schedule:
        schedule = self.get(identity, schedule_id)
        frequency = frequency or schedule.frequency
        is_active = schedule.is_active if is_active is None else is_active
        if is_active:
            self._ensure_slot_free(
                schedule.medicine_id, time_of_day, frequency, exclude_id=schedule.id
            )
        try:
            updated = self.store.update_schedule(
                schedule.id,
                time_of_day=time_of_day,
                frequency=frequency,
                is_active=is_active,
            )
        except ConstraintViolation as exc:
            raise DuplicateScheduleError(
                "a schedule already exists for this medicine with the same time and frequency",
                detail={"medicine_id": schedule.medicine_id},
            ) from exc
        if not updated:
            raise NotFoundError("schedule not found", detail={"schedule_id": schedule_id})
        return updated

    def delete(self, identity: Identity, schedule_id: str) -> None:
        schedule = self.get(identity, schedule_id)
        self.store.delete_schedule(schedule.id)
        logger.info("schedule_deleted", user_id=identity.user_id, schedule_id=schedule.id)
