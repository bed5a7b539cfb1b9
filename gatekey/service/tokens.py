from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from gatekey.logging import get_logger
from gatekey.service.errors import InvalidTokenError, SigningError
from gatekey.storage.models import utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_ALGORITHM = "HS256"


class TokenSigner:
    """Issues and verifies stateless HS256 access tokens.

    The secret is handed in once at construction and never re-read. Tokens
    carry ``sub``, ``iat``, ``exp``, ``iss``, ``aud``, ``jti`` and
    ``token_type``; verification never touches storage.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = timedelta(hours=24),
        issuer: str = "gatekey",
        audience: str = "gatekey-clients",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise SigningError("signing secret is not configured")
        self._secret = secret.encode()
        self.ttl = ttl
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def expires_at(self, issued_at: Optional[datetime] = None) -> datetime:
        return (issued_at or self._clock()) + self.ttl

    def issue(self, subject_id: str) -> str:
        return self.issue_with_expiry(subject_id)[0]

    def issue_with_expiry(self, subject_id: str) -> tuple[str, datetime]:
        if not subject_id:
            raise SigningError("cannot sign a token without a subject")
        now = self._clock()
        expires_at = self.expires_at(now)
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            raise SigningError("token payload could not be encoded") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", expires_at

    def decode(self, token: str) -> dict[str, Any]:
        """Return the verified claims of ``token`` or raise ``InvalidTokenError``."""

        if not token or not isinstance(token, str):
            raise InvalidTokenError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("invalid token") from None

        # Reject alg confusion (e.g. "none") before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidTokenError("invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("invalid token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("invalid token")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("invalid token")
        exp = payload.get("exp")
        if isinstance(exp, bool):
            raise InvalidTokenError("invalid token")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError("invalid token") from None
        if exp_ts <= self._clock().timestamp():
            raise InvalidTokenError("token expired")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("invalid token")
        return payload

    def verify(self, token: str) -> str:
        """Return the subject id carried by a valid access token."""

        return self.decode(token)["sub"]
