from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Tuple

from medtracker.logging import get_logger
from medtracker.service.auth import Identity
from medtracker.service.errors import (
    InvalidOperationError,
    NotFoundError,
    OwnershipError,
    ValidationError,
)
from medtracker.storage.models import Ingredient, Medicine, MedicineStatus, new_id, utcnow
from medtracker.storage.repositories import MedicineRepository, ProfileRepository

logger = get_logger(__name__)

UNKNOWN_PROFILE_NAME = "Unknown Profile"


@dataclass
class MedicineDraft:
    """Caller-supplied medicine fields for create and full update."""

    name: str
    quantity: int
    expiry_date: date
    image_url: Optional[str] = None
    dosage: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    composition: List[Ingredient] = field(default_factory=list)
    form: Optional[str] = None

    def as_fields(self) -> dict:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "expiry_date": self.expiry_date,
            "image_url": self.image_url,
            "dosage": self.dosage,
            "category": self.category,
            "notes": self.notes,
            "composition": list(self.composition),
            "form": self.form,
        }


class MedicineService:
    def __init__(
        self,
        store: MedicineRepository,
        profiles: ProfileRepository,
        *,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    def _validate(self, draft: MedicineDraft) -> MedicineDraft:
        name = (draft.name or "").strip()
        if not name:
            raise ValidationError("medicine name is required", detail={"field": "name"})
        if draft.quantity is None or draft.quantity <= 0:
            raise ValidationError("quantity must be positive", detail={"field": "quantity"})
        if draft.expiry_date <= self._today():
            raise ValidationError(
                "expiry date must be in the future", detail={"field": "expiry_date"}
            )
        draft.name = name
        return draft

    def _require_profile(self, identity: Identity, profile_id: str) -> None:
        profile = self.profiles.get_profile(profile_id)
        if not profile or profile.user_id != identity.user_id:
            logger.warning(
                "medicine_profile_not_owned",
                user_id=identity.user_id,
                profile_id=profile_id,
            )
            raise OwnershipError(
                "profile does not exist or does not belong to user",
                detail={"profile_id": profile_id},
            )

    def _owned(
        self,
        identity: Identity,
        medicine_id: str,
        *,
        profile_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> Medicine:
        medicine = self.store.get_medicine(medicine_id)
        if (
            not medicine
            or medicine.user_id != identity.user_id
            or (profile_id is not None and medicine.profile_id != profile_id)
            or (not include_inactive and not medicine.is_active)
        ):
            raise NotFoundError("medicine not found", detail={"medicine_id": medicine_id})
        return medicine

    def create(self, identity: Identity, profile_id: str, draft: MedicineDraft) -> Medicine:
        self._require_profile(identity, profile_id)
        draft = self._validate(draft)
        now = utcnow()
        medicine = Medicine(
            id=new_id(),
            user_id=identity.user_id,
            profile_id=profile_id,
            status=MedicineStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            **draft.as_fields(),
        )
        created = self.store.create_medicine(medicine)
        logger.info(
            "medicine_created",
            user_id=identity.user_id,
            profile_id=profile_id,
            medicine_id=created.id,
        )
        return created

    def get(
        self, identity: Identity, medicine_id: str, *, include_inactive: bool = False
    ) -> Medicine:
        return self._owned(identity, medicine_id, include_inactive=include_inactive)

    def list_for_profile(self, identity: Identity, profile_id: str) -> List[Medicine]:
        return self.store.list_medicines(identity.user_id, profile_id=profile_id)

    def list_for_user(self, identity: Identity) -> List[Medicine]:
        return self.store.list_medicines(identity.user_id)

    def list_with_profile(self, identity: Identity) -> List[Tuple[Medicine, str]]:
        """Active medicines paired with their profile's display name."""
        names = {p.id: p.name for p in self.profiles.list_profiles(identity.user_id)}
        return [
            (medicine, names.get(medicine.profile_id, UNKNOWN_PROFILE_NAME))
            for medicine in self.store.list_medicines(identity.user_id)
        ]

    def exists_for_user(self, identity: Identity, medicine_id: str) -> bool:
        medicine = self.store.get_medicine(medicine_id)
        return bool(medicine and medicine.user_id == identity.user_id)

    def update(
        self,
        identity: Identity,
        profile_id: str,
        medicine_id: str,
        draft: MedicineDraft,
    ) -> Medicine:
        self._owned(identity, medicine_id, profile_id=profile_id)
        draft = self._validate(draft)
        updated = self.store.update_medicine(medicine_id, draft.as_fields())
        if not updated:
            raise NotFoundError("medicine not found", detail={"medicine_id": medicine_id})
        logger.info("medicine_updated", user_id=identity.user_id, medicine_id=medicine_id)
        return updated

    def delete(self, identity: Identity, profile_id: str, medicine_id: str) -> None:
        """Soft delete; the row is kept and its schedules are deactivated."""
        self._owned(identity, medicine_id, profile_id=profile_id)
        self.store.set_medicine_status(medicine_id, MedicineStatus.INACTIVE)
        logger.info("medicine_deactivated", user_id=identity.user_id, medicine_id=medicine_id)

    def take_dose(self, identity: Identity, profile_id: str, medicine_id: str) -> Medicine:
        medicine = self._owned(identity, medicine_id, profile_id=profile_id)
        if medicine.quantity <= 0:
            logger.warning("take_dose_rejected", medicine_id=medicine_id, quantity=0)
            raise InvalidOperationError(
                "medicine quantity is already 0", detail={"medicine_id": medicine_id}
            )
        updated = self.store.decrement_medicine_quantity(medicine_id)
        if updated is None:
            # another request took the last unit or deactivated it in between
            logger.warning("take_dose_rejected", medicine_id=medicine_id, reason="race")
            raise InvalidOperationError(
                "medicine quantity is already 0", detail={"medicine_id": medicine_id}
            )
        logger.info("dose_taken", medicine_id=medicine_id, quantity=updated.quantity)
        return updated
