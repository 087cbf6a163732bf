from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from userhub.logging import get_logger
from userhub.storage.errors import ConstraintViolation
from userhub.storage.models import RefreshToken, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token TEXT,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        profile_image TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS app_user_created_at_idx ON app_user (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Postgres-backed credential store and refresh-token ledger.

    Each single-use token is consumed with one conditional
    ``UPDATE ... RETURNING`` so concurrent requests cannot both win.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
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
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            is_verified=bool(row.get("is_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            profile_image=row.get("profile_image"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, name, email, password_hash, role, is_verified,
                        email_verification_token, profile_image, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.name,
                        user.email,
                        user.password_hash,
                        user.role,
                        user.is_verified,
                        user.email_verification_token,
                        user.profile_image,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, *, page: int = 1, limit: int = 10, search: str = ""
    ) -> Tuple[List[User], int]:
        clause = ""
        params: list[Any] = []
        needle = search.strip()
        if needle:
            pattern = f"%{_escape_like(needle)}%"
            clause = "WHERE name ILIKE %s OR email ILIKE %s"
            params = [pattern, pattern]
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {clause}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user {clause} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_user(row) for row in rows], total

    def update_profile(
        self,
        user_id: str,
        *,
        name: str | None = None,
        profile_image: str | None = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name),
                    profile_image = COALESCE(%s, profile_image),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, profile_image, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_verified = TRUE, email_verification_token = NULL, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # single-use tokens
    def consume_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_verified = TRUE, email_verification_token = NULL, updated_at = now()
                WHERE email_verification_token = %s
                RETURNING *
                """,
                (token,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_reset(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_reset_token = %s, password_reset_expires = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (token, expires_at, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def consume_password_reset(
        self, token: str, password_hash: str, now: datetime | None = None
    ) -> Optional[User]:
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_reset_token = NULL,
                    password_reset_expires = NULL,
                    updated_at = now()
                WHERE password_reset_token = %s AND password_reset_expires > %s
                RETURNING *
                """,
                (password_hash, token, now or utcnow()),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        record = RefreshToken.new(user_id, token, expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, token, user_id, expires_at, record.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        now: datetime | None = None,
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET token = %s, expires_at = %s
                WHERE token = %s AND expires_at > %s
                RETURNING *
                """,
                (new_token, new_expires_at, old_token, now or utcnow()),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount
