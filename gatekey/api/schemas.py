from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# users.login and profiles.email are VARCHAR(255)
MAX_LOGIN_LENGTH = 255
MAX_PASSWORD_LENGTH = 1024
MAX_TOKEN_LENGTH = 2048


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""

    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Check the address format; the address is stored exactly as given."""

    email = value.strip()
    if len(email) > MAX_LOGIN_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return email


def _validate_login(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("login must not be blank")
    if len(normalized) > MAX_LOGIN_LENGTH:
        raise ValueError(f"login must be at most {MAX_LOGIN_LENGTH} characters")
    return normalized


class RegisterRequest(BaseModel):
    login: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    email: Optional[str] = None

    @field_validator("login")
    @classmethod
    def _validate_register_login(cls, value: str) -> str:
        return _validate_login(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _validate_email(value)


class RegisterResponse(BaseModel):
    user_id: str


class LoginRequest(BaseModel):
    login: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("login")
    @classmethod
    def _validate_login_login(cls, value: str) -> str:
        return _validate_login(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(default="", max_length=MAX_TOKEN_LENGTH)


class AuthResponse(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class ProfileUpdateRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: str) -> str:
        return _validate_email(value)


class ProfileResponse(BaseModel):
    user_id: str
    email: str
