from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class User:
    id: int
    login: str
    password_hash: str
    user_id: str


@dataclass
class Profile:
    user_id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    revoked: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = ensure_utc(now) if now else utcnow()
        return current >= ensure_utc(self.expires_at)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)
