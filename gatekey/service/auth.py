from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from gatekey.logging import get_logger
from gatekey.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from gatekey.service.passwords import PasswordHasher
from gatekey.service.refresh import RefreshTokenLifecycle
from gatekey.service.tokens import TokenSigner
from gatekey.storage.common import AuthStore
from gatekey.storage.errors import AlreadyExists, NotFound, StorageUnavailable
from gatekey.storage.models import RefreshToken

_INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class AuthService:
    """Registration, login and session operations over one ``AuthStore``.

    Storage failures are translated into service errors here; nothing above
    this class sees a storage exception or its message.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        signer: TokenSigner,
        refresh: RefreshTokenLifecycle,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.signer = signer
        self.refresh = refresh
        self.logger = get_logger(__name__)
        # Verified against for unknown logins so both failure paths cost one argon2 run
        self._dummy_hash = hasher.hash("gatekey-dummy-password")

    @contextlib.contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageUnavailable as exc:
            self.logger.error(
                "storage_unavailable",
                operation=operation,
                error=exc.message,
                detail=exc.detail,
            )
            raise StorageUnavailableError("storage unavailable") from exc

    def _transaction(self):
        # Postgres rolls back the user row when the profile write fails; the
        # memory store has no transaction
        if hasattr(self.store, "transaction"):
            return self.store.transaction()
        return contextlib.nullcontext()

    def _pair(self, refresh_token: RefreshToken) -> TokenPair:
        access_token, expires_at = self.signer.issue_with_expiry(refresh_token.user_id)
        return TokenPair(
            user_id=refresh_token.user_id,
            access_token=access_token,
            refresh_token=refresh_token.token,
            expires_at=expires_at,
            refresh_expires_at=refresh_token.expires_at,
        )

    def register(
        self, login: str, password: str, *, email: Optional[str] = None
    ) -> str:
        if not login or not password:
            raise ValidationError("login and password are required")
        password_hash = self.hasher.hash(password)
        with self._storage_errors("register"), self._transaction():
            try:
                user = self.store.create_user(login, password_hash)
            except AlreadyExists as exc:
                self.logger.info("register_conflict", field=exc.detail.get("field"))
                raise ConflictError(
                    "login already registered", detail={"field": "login"}
                ) from exc
            if email:
                self.store.set_profile(user.user_id, email)
        self.logger.info("user_registered", user_id=user.user_id)
        return user.user_id

    def authenticate(self, login: str, password: str) -> str:
        """Return the subject id for a matching login and password."""

        with self._storage_errors("authenticate"):
            try:
                user = self.store.get_user_by_login(login)
            except NotFound:
                self.hasher.verify(password, self._dummy_hash)
                self.logger.info("login_failed", reason="credentials")
                raise InvalidCredentialsError(_INVALID_CREDENTIALS) from None
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        return user.user_id

    def login(self, login: str, password: str) -> TokenPair:
        user_id = self.authenticate(login, password)
        with self._storage_errors("login"):
            refresh_token = self.refresh.issue(user_id)
        self.logger.info("login_succeeded", user_id=user_id)
        return self._pair(refresh_token)

    def verify_access_token(self, token: str) -> str:
        return self.signer.verify(token)

    def refresh_session(self, refresh_token: str) -> TokenPair:
        with self._storage_errors("refresh_session"):
            replacement = self.refresh.rotate(refresh_token)
        return self._pair(replacement)

    def logout(self, refresh_token: str) -> None:
        """Revoke ``refresh_token``; already-invalid tokens are accepted silently."""

        with self._storage_errors("logout"):
            self.refresh.revoke(refresh_token)

    def get_profile(self, user_id: str) -> str:
        with self._storage_errors("get_profile"):
            try:
                profile = self.store.get_profile(user_id)
            except NotFound as exc:
                raise NotFoundError("profile not found") from exc
        return profile.email

    def set_profile(self, user_id: str, email: str) -> None:
        with self._storage_errors("set_profile"):
            self.store.set_profile(user_id, email)
        self.logger.info("profile_updated", user_id=user_id)

    def sweep_expired_refresh_tokens(self) -> int:
        return self.refresh.sweep()

    def ping(self) -> None:
        with self._storage_errors("ping"):
            self.store.ping()
