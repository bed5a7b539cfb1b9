from __future__ import annotations

import contextlib
import threading
from datetime import datetime
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from gatekey.logging import get_logger
from gatekey.storage.common import new_subject_id
from gatekey.storage.errors import AlreadyExists, NotFound, StorageUnavailable
from gatekey.storage.models import Profile, RefreshToken, User, ensure_utc, utcnow


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        login VARCHAR(255) NOT NULL UNIQUE,
        password VARCHAR(255) NOT NULL,
        user_id VARCHAR(255) NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id VARCHAR(255) PRIMARY KEY,
        email VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        token TEXT PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at ON refresh_tokens (expires_at)",
)


class PostgresStore:
    """Postgres-backed store; uniqueness is enforced by table constraints."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._tx_local = threading.local()
        try:
            self.pool = ConnectionPool(
                self.dsn,
                min_size=min_size,
                max_size=max_size,
                timeout=timeout,
                kwargs={"row_factory": dict_row, "autocommit": False},
                open=True,
            )
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise StorageUnavailable("cannot open database pool") from exc
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Yield the thread's transaction connection, or borrow one from the pool.

        Connectivity failures surface as ``StorageUnavailable``.
        """
        active = getattr(self._tx_local, "conn", None)
        if active is not None:
            yield active
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable("database unavailable") from exc

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed store calls on one connection inside one transaction."""

        if getattr(self._tx_local, "conn", None) is not None:
            yield
            return
        with self._connect() as conn:
            with conn.transaction():
                self._tx_local.conn = conn
                try:
                    yield
                finally:
                    self._tx_local.conn = None

    def _ensure_schema(self) -> None:
        """Create the users, profiles and refresh_tokens tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    # users
    def create_user(
        self, login: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> User:
        subject_id = user_id or new_subject_id()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO users (login, password, user_id)
                    VALUES (%s, %s, %s)
                    RETURNING id
                    """,
                    (login, password_hash, subject_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or str(exc)
            field = "user_id" if "user_id" in constraint else "login"
            raise AlreadyExists(f"{field} already exists", {"field": field}) from exc
        return User(
            id=int(row["id"]),
            login=login,
            password_hash=password_hash,
            user_id=subject_id,
        )

    def get_user_by_login(self, login: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, login, password, user_id FROM users WHERE login = %s",
                (login,),
            ).fetchone()
        if not row:
            raise NotFound("user not found", {"field": "login"})
        return User(
            id=int(row["id"]),
            login=row["login"],
            password_hash=row["password"],
            user_id=row["user_id"],
        )

    # profiles
    def set_profile(self, user_id: str, email: str) -> Profile:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO profiles (user_id, email)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET email = EXCLUDED.email
                RETURNING user_id, email, created_at
                """,
                (user_id, email),
            ).fetchone()
        return Profile(
            user_id=row["user_id"], email=row["email"], created_at=row["created_at"]
        )

    def get_profile(self, user_id: str) -> Profile:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, email, created_at FROM profiles WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            raise NotFound("profile not found", {"user_id": user_id})
        return Profile(
            user_id=row["user_id"], email=row["email"] or "", created_at=row["created_at"]
        )

    # refresh tokens
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        expires_at = ensure_utc(expires_at)
        # A savepoint inside an open transaction, so a collision leaves the
        # outer transaction usable for the retry
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (token, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    """,
                    (token, user_id, expires_at),
                )
        except errors.UniqueViolation as exc:
            raise AlreadyExists(
                "refresh token already exists", {"field": "token"}
            ) from exc
        return RefreshToken(token=token, user_id=user_id, expires_at=expires_at)

    def get_refresh_token(self, token: str) -> RefreshToken:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, user_id, expires_at, revoked FROM refresh_tokens WHERE token = %s",
                (token,),
            ).fetchone()
        if not row:
            raise NotFound("refresh token not found")
        return RefreshToken(
            token=row["token"],
            user_id=row["user_id"],
            expires_at=ensure_utc(row["expires_at"]),
            revoked=bool(row["revoked"]),
        )

    def revoke_refresh_token(self, token: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_tokens SET revoked = TRUE WHERE token = %s", (token,)
            )
            if result.rowcount == 0:
                raise NotFound("refresh token not found")

    def revoke_refresh_token_if_active(
        self, token: str, now: Optional[datetime] = None
    ) -> bool:
        current = ensure_utc(now) if now else utcnow()
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_tokens SET revoked = TRUE
                WHERE token = %s AND revoked = FALSE AND expires_at > %s
                """,
                (token, current),
            )
            if result.rowcount:
                return True
            exists = conn.execute(
                "SELECT 1 FROM refresh_tokens WHERE token = %s", (token,)
            ).fetchone()
        if not exists:
            raise NotFound("refresh token not found")
        return False

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = ensure_utc(now) if now else utcnow()
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (current,)
            )
            return max(result.rowcount, 0)

    # lifecycle
    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
