from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from gatekey.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
)
from gatekey.service.auth import TokenPair
from gatekey.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_user(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the bearer access token to a subject id.

    Verification is stateless; no storage lookup happens here.
    """
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return get_runtime().auth.verify_access_token(token)


def _auth_response(pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=pair.user_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest):
    """Create an account for ``login``.

    Raises:
        409: If the login is already registered
    """
    runtime = get_runtime()
    user_id = runtime.auth.register(body.login, body.password, email=body.email)
    return Envelope(status="ok", data=RegisterResponse(user_id=user_id))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Exchange login and password for an access token and a refresh token.

    Raises:
        401: If credentials are invalid; unknown logins and wrong passwords
            are indistinguishable
    """
    runtime = get_runtime()
    pair = runtime.auth.login(body.login, body.password)
    return Envelope(status="ok", data=_auth_response(pair))


@router.post("/auth/token/refresh", response_model=Envelope, tags=["auth"])
def refresh_token(body: TokenRefreshRequest):
    """Rotate a refresh token; the presented token cannot be used again."""

    runtime = get_runtime()
    pair = runtime.auth.refresh_session(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(pair))


@router.post("/auth/logout", status_code=204, tags=["auth"])
def logout(body: Optional[LogoutRequest] = None):
    """Revoke a refresh token; a missing body or unknown token still succeeds."""

    runtime = get_runtime()
    runtime.auth.logout(body.refresh_token if body else "")
    return Response(status_code=204)


@router.get("/auth/profile", response_model=Envelope, tags=["profile"])
def get_profile(user_id: str = Depends(get_user)):
    """Return the caller's profile.

    Raises:
        404: If no profile has been set for the caller
    """
    runtime = get_runtime()
    email = runtime.auth.get_profile(user_id)
    return Envelope(status="ok", data=ProfileResponse(user_id=user_id, email=email))


@router.put("/auth/profile", response_model=Envelope, tags=["profile"])
def set_profile(body: ProfileUpdateRequest, user_id: str = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.set_profile(user_id, body.email)
    return Envelope(status="ok", data=ProfileResponse(user_id=user_id, email=body.email))
