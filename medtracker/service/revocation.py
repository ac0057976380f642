from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional

from medtracker.logging import get_logger
from medtracker.storage.repositories import RevokedTokenRepository

logger = get_logger(__name__)


def token_fingerprint(token: str) -> str:
    """Stable key for a token; raw tokens are never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenRevocationService:
    """Explicit token denylist with expiry-based purging."""

    def __init__(self, store: RevokedTokenRepository) -> None:
        self.store = store

    def revoke(self, token: str, user_id: str, expires_at: datetime) -> None:
        self.store.add_revoked_token(token_fingerprint(token), user_id, expires_at)
        logger.info("token_revoked", user_id=user_id)

    def is_revoked(self, token: str) -> bool:
        return self.store.is_token_revoked(token_fingerprint(token))

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_revoked_tokens(now or datetime.now(timezone.utc))
        if removed:
            logger.info("revoked_tokens_purged", count=removed)
        return removed

    def revoke_all_user_tokens(self, user_id: str) -> None:
        """Intentional no-op.

        Outstanding tokens are invalidated by advancing the user's
        ``password_last_changed`` watermark, which ``TokenService.validate``
        checks on every request.
        """
        logger.info("revoke_all_user_tokens_via_watermark", user_id=user_id)
