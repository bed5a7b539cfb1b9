from __future__ import annotations

import contextlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from gatekey.logging import get_logger
from gatekey.service.errors import InvalidTokenError
from gatekey.storage.common import AuthStore
from gatekey.storage.errors import AlreadyExists, NotFound, StorageError
from gatekey.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)

# 32 random bytes, url-safe encoded (~43 chars)
REFRESH_TOKEN_BYTES = 32
_MAX_ISSUE_ATTEMPTS = 3


class RefreshTokenLifecycle:
    """Issue, rotate, revoke and expire opaque refresh tokens.

    States per token: active -> rotated | revoked | expired. Rotation always
    revokes the presented token and creates a new row; nothing is renewed in
    place, so a replayed old token fails closed.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl: timedelta = timedelta(hours=720),
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = lambda: secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._token_factory = token_factory

    def _transaction(self):
        # Postgres shares one transaction for revoke + create; the memory
        # store has no transaction and runs the two calls back to back.
        if hasattr(self.store, "transaction"):
            return self.store.transaction()
        return contextlib.nullcontext()

    def issue(self, user_id: str) -> RefreshToken:
        expires_at = self._clock() + self.ttl
        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            token = self._token_factory()
            try:
                return self.store.create_refresh_token(token, user_id, expires_at)
            except AlreadyExists:
                logger.warning("refresh_token_collision", attempt=attempt)
                if attempt == _MAX_ISSUE_ATTEMPTS:
                    raise
        raise AssertionError("unreachable")

    def validate(self, token: str) -> RefreshToken:
        """Return the stored record if ``token`` is currently usable."""

        if not token:
            raise InvalidTokenError("invalid refresh token")
        try:
            record = self.store.get_refresh_token(token)
        except NotFound:
            raise InvalidTokenError("invalid refresh token") from None
        if record.revoked:
            logger.info("refresh_token_reuse_rejected", user_id=record.user_id)
            raise InvalidTokenError("invalid refresh token")
        if record.is_expired(self._clock()):
            raise InvalidTokenError("invalid refresh token")
        return record

    def rotate(self, token: str) -> RefreshToken:
        """Consume ``token`` and return its replacement for the same subject."""

        record = self.validate(token)
        with self._transaction():
            try:
                consumed = self.store.revoke_refresh_token_if_active(
                    token, self._clock()
                )
            except NotFound:
                # Swept between validate and revoke
                raise InvalidTokenError("invalid refresh token") from None
            if not consumed:
                # Another request rotated or revoked it first
                logger.info("refresh_token_rotation_lost_race", user_id=record.user_id)
                raise InvalidTokenError("invalid refresh token")
            replacement = self.issue(record.user_id)
        logger.info("refresh_token_rotated", user_id=record.user_id)
        return replacement

    def revoke(self, token: str) -> None:
        """Revoke ``token`` if it exists; unknown tokens are not an error."""

        if not token:
            return
        try:
            self.store.revoke_refresh_token(token)
        except NotFound:
            logger.info("refresh_token_revoke_unknown")
            return
        logger.info("refresh_token_revoked")

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete expired tokens; failures are logged, never raised."""

        current = now or self._clock()
        try:
            deleted = self.store.delete_expired_refresh_tokens(current)
        except StorageError as exc:
            logger.warning(
                "refresh_sweep_failed",
                error_type=type(exc).__name__,
                error=exc.message,
                detail=exc.detail,
            )
            return 0
        logger.info("refresh_sweep_completed", deleted=deleted)
        return deleted
