"""Storage contract shared by the memory and postgres implementations.

Both stores satisfy :class:`AuthStore`; the rest of the service depends only
on this protocol and never branches on which backend is active.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Optional, Protocol

from gatekey.storage.errors import StorageUnavailable
from gatekey.storage.models import Profile, RefreshToken, User


class AuthStore(Protocol):
    def create_user(
        self, login: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> User: ...

    def get_user_by_login(self, login: str) -> User: ...

    def set_profile(self, user_id: str, email: str) -> Profile: ...

    def get_profile(self, user_id: str) -> Profile: ...

    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> RefreshToken: ...

    def revoke_refresh_token(self, token: str) -> None: ...

    def revoke_refresh_token_if_active(
        self, token: str, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


def new_subject_id() -> str:
    """Opaque, stable subject identifier handed out at registration."""

    return str(uuid.uuid4())


# ============================================================================
# USER LOG LINES - one JSON object per registered user
# ============================================================================

def serialize_user_line(user: User) -> str:
    return json.dumps(
        {
            "id": user.id,
            "login": user.login,
            "password": user.password_hash,
            "user_id": user.user_id,
        },
        separators=(",", ":"),
    )


def deserialize_user_line(line: str, *, line_no: int = 0) -> User:
    """Parse one users-log line, raising ``StorageUnavailable`` when corrupt."""

    try:
        data = json.loads(line)
        return User(
            id=int(data["id"]),
            login=str(data["login"]),
            password_hash=str(data["password"]),
            user_id=str(data["user_id"]),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise StorageUnavailable(
            "users log is corrupt", {"line": line_no, "error": str(exc)}
        ) from exc


__all__ = [
    "AuthStore",
    "new_subject_id",
    "serialize_user_line",
    "deserialize_user_line",
]
