from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import LoginAttemptState, RefreshToken, User


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PostgresStore:
    """Postgres-backed user and refresh-token store.

    Every mutation that must be race-free (failed-login counting, token
    rotation, owner-scoped revocation) is a single statement so the
    database row lock is the only synchronization needed.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            role=row.get("role", "user"),
            login_attempts=row.get("login_attempts", 0) or 0,
            locked_until=row.get("locked_until"),
            created_at=row.get("created_at") or _now(),
            updated_at=row.get("updated_at") or _now(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            owner_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or _now(),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, password_hash, name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount > 0

    def update_login_attempts(
        self, user_id: str, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET login_attempts = %s, locked_until = %s, updated_at = now()
                WHERE id = %s
                """,
                (attempts, locked_until, user_id),
            )

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_until: datetime,
    ) -> Optional[LoginAttemptState]:
        # Single UPDATE: concurrent failures serialize on the row lock.
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH prev AS (
                    SELECT id,
                           CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                                THEN 0 ELSE login_attempts END AS base_attempts,
                           CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                                THEN NULL ELSE locked_until END AS base_locked
                    FROM app_user WHERE id = %(user_id)s FOR UPDATE
                )
                UPDATE app_user u
                SET login_attempts = prev.base_attempts + 1,
                    locked_until = CASE
                        WHEN prev.base_locked IS NOT NULL THEN prev.base_locked
                        WHEN prev.base_attempts + 1 >= %(max_attempts)s THEN %(lockout_until)s
                        ELSE NULL END,
                    updated_at = %(now)s
                FROM prev
                WHERE u.id = prev.id
                RETURNING u.login_attempts, u.locked_until
                """,
                {
                    "user_id": user_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lockout_until": lockout_until,
                },
            ).fetchone()
        if not row:
            return None
        return LoginAttemptState(
            attempt_count=row["login_attempts"], locked_until=row.get("locked_until")
        )

    # refresh tokens
    def create_refresh_token(
        self, token: str, owner_id: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (token, owner_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._token_from_row(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_refresh_token_if_owned(self, token: str, owner_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s AND user_id = %s",
                (token, owner_id),
            )
            return cur.rowcount > 0

    def delete_refresh_tokens_for_owner(self, owner_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (owner_id,)
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or _now(),)
            )
            removed = cur.rowcount
        if removed:
            self.logger.info("refresh_tokens_expired_removed", count=removed)
        return removed
