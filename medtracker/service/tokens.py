from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from medtracker.config import Settings
from medtracker.logging import get_logger
from medtracker.service.errors import InvalidTokenError
from medtracker.storage.models import User

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_micros(moment: datetime) -> int:
    """Integer microseconds since the epoch; exact for watermark comparisons."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    password_changed: datetime
    jti: str


class TokenService:
    """Issues and checks HS256 bearer tokens.

    Each token snapshots the user's ``password_last_changed`` watermark. A
    token stays acceptable only while its snapshot is not older than the
    user's current watermark, so a password reset invalidates every token
    issued before it without tracking them individually.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.ttl = timedelta(minutes=settings.token_ttl_minutes)

    def now(self) -> datetime:
        return self._clock()

    def issue(self, user: User) -> str:
        now = self.now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.email,
            "user_id": user.id,
            "iat": to_micros(now) // 1_000_000,
            "exp": to_micros(now + self.ttl) // 1_000_000,
            "pwd_changed": to_micros(user.password_last_changed),
            # unique per issuance so two tokens in the same second differ
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def decode(self, token: str) -> TokenClaims:
        """Verify signature, issuer and audience; expiry is left to ``validate``."""
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError("invalid token")
        try:
            return TokenClaims(
                subject=str(payload["sub"]),
                user_id=str(payload["user_id"]),
                issued_at=from_micros(int(payload["iat"]) * 1_000_000),
                expires_at=from_micros(int(payload["exp"]) * 1_000_000),
                password_changed=from_micros(int(payload["pwd_changed"])),
                jti=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("jwt_claims_malformed", error=str(exc))
            raise InvalidTokenError("invalid token") from exc

    def extract_identity(self, token: str) -> str:
        return self.decode(token).subject

    def validate(self, token: str, user: User) -> bool:
        try:
            claims = self.decode(token)
        except InvalidTokenError:
            return False
        if self.now() >= claims.expires_at:
            return False
        if claims.subject != user.email or claims.user_id != user.id:
            return False
        if to_micros(claims.password_changed) < to_micros(user.password_last_changed):
            logger.info("token_predates_password_change", user_id=user.id)
            return False
        return True

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        if not token.isascii():
            return None

        # only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        return payload
