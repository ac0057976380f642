from __future__ import annotations

from typing import List

from medtracker.logging import get_logger
from medtracker.service.auth import Identity
from medtracker.service.errors import DuplicateProfileError, NotFoundError, ValidationError
from medtracker.storage.errors import ConstraintViolation
from medtracker.storage.models import Profile
from medtracker.storage.repositories import ProfileRepository

logger = get_logger(__name__)


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("profile name is required", detail={"field": "name"})
    return cleaned


class ProfileService:
    """Family profiles; names are unique per user."""

    def __init__(self, store: ProfileRepository) -> None:
        self.store = store

    def create(self, identity: Identity, name: str) -> Profile:
        name = _clean_name(name)
        if self.store.find_profile_by_name(identity.user_id, name):
            raise DuplicateProfileError("profile name already exists")
        try:
            profile = self.store.create_profile(identity.user_id, name)
        except ConstraintViolation as exc:
            raise DuplicateProfileError("profile name already exists") from exc
        logger.info("profile_created", user_id=identity.user_id, profile_id=profile.id)
        return profile

    def get(self, identity: Identity, profile_id: str) -> Profile:
        profile = self.store.get_profile(profile_id)
        # foreign and missing profiles are indistinguishable to the caller
        if not profile or profile.user_id != identity.user_id:
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        return profile

    def list(self, identity: Identity) -> List[Profile]:
        return self.store.list_profiles(identity.user_id)

    def exists_for_user(self, identity: Identity, profile_id: str) -> bool:
        profile = self.store.get_profile(profile_id)
        return bool(profile and profile.user_id == identity.user_id)

    def update(self, identity: Identity, profile_id: str, name: str) -> Profile:
        profile = self.get(identity, profile_id)
        name = _clean_name(name)
        if name == profile.name:
            return profile
        clash = self.store.find_profile_by_name(identity.user_id, name)
        if clash and clash.id != profile.id:
            raise DuplicateProfileError("profile name already exists")
        try:
            updated = self.store.rename_profile(profile.id, name)
        except ConstraintViolation as exc:
            raise DuplicateProfileError("profile name already exists") from exc
        if not updated:
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        return updated

    def delete(self, identity: Identity, profile_id: str) -> None:
        """Delete a profile with its schedules; its medicines become INACTIVE."""
        profile = self.get(identity, profile_id)
        if not self.store.cascade_delete_profile(profile.id):
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        logger.info("profile_deleted", user_id=identity.user_id, profile_id=profile.id)
