from __future__ import annotations

from medtracker.logging import get_logger
from medtracker.service.auth import Identity
from medtracker.service.errors import UserNotFoundError, ValidationError
from medtracker.storage.models import User
from medtracker.storage.repositories import UserRepository

logger = get_logger(__name__)


class UserService:
    def __init__(self, store: UserRepository) -> None:
        self.store = store

    def update_fcm_token(self, identity: Identity, fcm_token: str) -> User:
        fcm_token = (fcm_token or "").strip()
        if not fcm_token:
            raise ValidationError("fcm token is required", detail={"field": "fcm_token"})
        user = self.store.update_fcm_token(identity.user_id, fcm_token)
        if not user:
            raise UserNotFoundError("user not found")
        logger.info("fcm_token_updated", user_id=user.id)
        return user
