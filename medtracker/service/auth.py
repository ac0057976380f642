from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from medtracker.logging import get_logger
from medtracker.service.errors import (
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    UserNotFoundError,
    ValidationError,
)
from medtracker.service.revocation import TokenRevocationService
from medtracker.service.tokens import TokenService
from medtracker.storage.errors import ConstraintViolation
from medtracker.storage.models import User
from medtracker.storage.repositories import UserRepository

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, passed explicitly into every scoped service call."""

    user_id: str
    email: str


@dataclass(frozen=True)
class AuthResult:
    token: str
    email: str
    user_id: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    def __init__(
        self,
        store: UserRepository,
        tokens: TokenService,
        revocations: TokenRevocationService,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.revocations = revocations
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against for unknown emails so both login paths do the same work
        self._decoy_hash = self._pwd_hasher.hash("medtracker-decoy-password")

    def _hash_password(self, password: str) -> str:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return self._pwd_hasher.hash(password)

    def _verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _result(self, user: User) -> AuthResult:
        return AuthResult(token=self.tokens.issue(user), email=user.email, user_id=user.id)

    def register(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        if self.store.get_user_by_email(email):
            raise DuplicateEmailError("email already registered")
        password_hash = self._hash_password(password)
        try:
            user = self.store.create_user(email, password_hash, self.tokens.now())
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            raise DuplicateEmailError("email already registered") from exc
        logger.info("user_registered", user_id=user.id)
        return self._result(user)

    def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self._verify(self._decoy_hash, password or "")
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("invalid email or password")
        if not self._verify(user.password_hash, password or ""):
            logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")
        logger.info("login_succeeded", user_id=user.id)
        return self._result(user)

    def reset_password(self, email: str, new_password: str) -> AuthResult:
        """Replace the password and advance the watermark.

        The new watermark is strictly later than the previous one, so every
        token issued before the reset fails validation from now on.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise UserNotFoundError("user not found")
        password_hash = self._hash_password(new_password)
        changed_at = max(
            self.tokens.now(), user.password_last_changed + timedelta(microseconds=1)
        )
        updated = self.store.update_password(user.id, password_hash, changed_at)
        if not updated:
            raise UserNotFoundError("user not found")
        self.revocations.revoke_all_user_tokens(updated.id)
        logger.info("password_reset", user_id=updated.id)
        return self._result(updated)

    def logout(self, token: str) -> None:
        claims = self.tokens.decode(token)
        self.revocations.revoke(token, claims.user_id, claims.expires_at)

    def identify(self, token: str) -> Optional[Identity]:
        """Resolve a bearer token to an identity, or ``None`` when it is not acceptable."""
        try:
            email = self.tokens.extract_identity(token)
        except InvalidTokenError:
            return None
        user = self.store.get_user_by_email(email)
        if not user or not self.tokens.validate(token, user):
            return None
        return Identity(user_id=user.id, email=user.email)

