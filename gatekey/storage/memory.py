from __future__ import annotations

import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, TextIO

from gatekey.logging import get_logger
from gatekey.storage.common import (
    deserialize_user_line,
    new_subject_id,
    serialize_user_line,
)
from gatekey.storage.errors import AlreadyExists, NotFound, StorageUnavailable
from gatekey.storage.models import Profile, RefreshToken, User, ensure_utc, utcnow


class MemoryStore:
    """In-process store; registered users survive restarts via an append-only log.

    Profiles and refresh tokens live only in memory. Users are replayed from
    ``<file_storage_path>.users`` on construction and every new user is
    appended to that file as one JSON line before it becomes visible.
    """

    def __init__(self, file_storage_path: str) -> None:
        if not file_storage_path:
            raise ValueError("file_storage_path is required for the memory store")
        self.logger = get_logger(__name__)
        self.users_path = Path(f"{file_storage_path}.users")
        self.users: Dict[str, User] = {}  # login -> user
        self._subject_ids: set[str] = set()
        self.profiles: Dict[str, Profile] = {}  # user_id -> profile
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._user_id_seq = 1
        # RLock for all data operations; also serialises appends to the users log
        self._data_lock = threading.RLock()
        self._closed = False
        self._load_users()
        try:
            self._users_file: Optional[TextIO] = open(
                self.users_path, "a", encoding="utf-8"
            )
        except OSError as exc:
            raise StorageUnavailable(
                "cannot open users log", {"path": str(self.users_path)}
            ) from exc

    def _load_users(self) -> None:
        try:
            self.users_path.parent.mkdir(parents=True, exist_ok=True)
            if not self.users_path.exists():
                return
            with open(self.users_path, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:
            raise StorageUnavailable(
                "cannot read users log", {"path": str(self.users_path)}
            ) from exc
        for line_no, raw in enumerate(lines, start=1):
            if not raw.strip():
                continue
            user = deserialize_user_line(raw, line_no=line_no)
            self.users[user.login] = user
            self._subject_ids.add(user.user_id)
            self._user_id_seq = max(self._user_id_seq, user.id + 1)
        self.logger.info(
            "memory_store_users_loaded",
            count=len(self.users),
            path=str(self.users_path),
        )

    def _append_user(self, user: User) -> None:
        if self._users_file is None:
            raise StorageUnavailable("users log is closed")
        try:
            self._users_file.write(serialize_user_line(user) + "\n")
            self._users_file.flush()
            os.fsync(self._users_file.fileno())
        except OSError as exc:
            raise StorageUnavailable(
                "cannot append to users log", {"path": str(self.users_path)}
            ) from exc

    # users
    def create_user(
        self, login: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> User:
        with self._data_lock:
            self._check_open()
            if login in self.users:
                raise AlreadyExists("login already exists", {"field": "login"})
            subject_id = user_id or new_subject_id()
            if subject_id in self._subject_ids:
                raise AlreadyExists("user_id already exists", {"field": "user_id"})
            user = User(
                id=self._user_id_seq,
                login=login,
                password_hash=password_hash,
                user_id=subject_id,
            )
            self._append_user(user)
            self._user_id_seq += 1
            self.users[login] = user
            self._subject_ids.add(subject_id)
            return user

    def get_user_by_login(self, login: str) -> User:
        with self._data_lock:
            self._check_open()
            user = self.users.get(login)
        if not user:
            raise NotFound("user not found", {"field": "login"})
        return user

    # profiles
    def set_profile(self, user_id: str, email: str) -> Profile:
        with self._data_lock:
            self._check_open()
            existing = self.profiles.get(user_id)
            if existing:
                existing.email = email
                return existing
            profile = Profile(user_id=user_id, email=email)
            self.profiles[user_id] = profile
            return profile

    def get_profile(self, user_id: str) -> Profile:
        with self._data_lock:
            self._check_open()
            profile = self.profiles.get(user_id)
        if not profile:
            raise NotFound("profile not found", {"user_id": user_id})
        return profile

    # refresh tokens
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            self._check_open()
            if token in self.refresh_tokens:
                raise AlreadyExists("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                token=token, user_id=user_id, expires_at=ensure_utc(expires_at)
            )
            self.refresh_tokens[token] = record
            # Callers get a snapshot; later revocations must not mutate it
            return RefreshToken(**record.__dict__)

    def get_refresh_token(self, token: str) -> RefreshToken:
        with self._data_lock:
            self._check_open()
            record = self.refresh_tokens.get(token)
            if not record:
                raise NotFound("refresh token not found")
            return RefreshToken(**record.__dict__)

    def revoke_refresh_token(self, token: str) -> None:
        with self._data_lock:
            self._check_open()
            record = self.refresh_tokens.get(token)
            if not record:
                raise NotFound("refresh token not found")
            record.revoked = True

    def revoke_refresh_token_if_active(
        self, token: str, now: Optional[datetime] = None
    ) -> bool:
        """Atomically revoke ``token`` only if it is still usable.

        Returns ``True`` when this call performed the transition; ``False``
        when the token was already revoked or expired.
        """
        with self._data_lock:
            self._check_open()
            record = self.refresh_tokens.get(token)
            if not record:
                raise NotFound("refresh token not found")
            if not record.is_active(now):
                return False
            record.revoked = True
            return True

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = ensure_utc(now) if now else utcnow()
        with self._data_lock:
            self._check_open()
            expired = [
                token
                for token, record in self.refresh_tokens.items()
                if record.is_expired(current)
            ]
            for token in expired:
                self.refresh_tokens.pop(token, None)
        return len(expired)

    # lifecycle
    def _check_open(self) -> None:
        if self._closed:
            raise StorageUnavailable("memory store is closed")

    def ping(self) -> None:
        with self._data_lock:
            self._check_open()

    def close(self) -> None:
        with self._data_lock:
            if self._users_file is not None:
                self._users_file.close()
                self._users_file = None
            self._closed = True
