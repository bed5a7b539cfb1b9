from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekey.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id hashing for login passwords.

    The argon2 primitive salts every hash and compares in constant time, so
    ``verify`` adds no comparison of its own.
    """

    def __init__(self, **params) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID, **params)
        self.algo = PASSWORD_ALGO

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
