from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storefront_auth.logging import get_logger
from storefront_auth.storage.errors import ConstraintViolation, StoreUnavailable
from storefront_auth.storage.models import (
    RefreshTokenRecord,
    User,
    UserStatus,
    utcnow,
)

_USER_COLUMNS = (
    "password_hash",
    "status",
    "role",
    "email_verified",
    "first_name",
    "last_name",
    "last_login_at",
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'suspended')),
        role TEXT NOT NULL DEFAULT 'customer',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_digest TEXT NOT NULL UNIQUE,
        ip_address TEXT,
        user_agent TEXT,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at ON refresh_tokens(expires_at)",
)


class PostgresStore:
    """Postgres-backed store for users and refresh-token records."""

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

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
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
            email=row["email"],
            password_hash=row["password_hash"],
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            role=row.get("role") or "customer",
            email_verified=bool(row.get("email_verified", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_digest=row["token_digest"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_revoked=bool(row.get("is_revoked", False)),
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

    # users
    def insert_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, status, role, email_verified,
                                       first_name, last_name, last_login_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        user.email.lower(),
                        user.password_hash,
                        UserStatus(user.status).value,
                        user.role,
                        user.email_verified,
                        user.first_name,
                        user.last_name,
                        user.last_login_at,
                        user.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_fields(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.find_user_by_id(user_id)
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        query = sql.SQL("UPDATE users SET {} WHERE id = %s RETURNING *").format(assignments)
        with self._connect() as conn:
            row = conn.execute(query, (*fields.values(), user_id)).fetchone()
        return self._row_to_user(row) if row else None

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_digest, ip_address, user_agent,
                                                is_revoked, created_at, last_used_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_digest,
                        record.ip_address,
                        record.user_agent,
                        record.is_revoked,
                        record.created_at,
                        record.last_used_at,
                        record.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token digest collision", {"field": "token_digest"})
        return self._row_to_refresh_token(row)

    def find_refresh_token_by_digest(self, digest: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_digest = %s LIMIT 1", (digest,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def update_refresh_token(self, token_id: str, **patch) -> Optional[RefreshTokenRecord]:
        allowed = {"is_revoked", "last_used_at"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"unsupported refresh token fields: {sorted(unknown)}")
        if not patch:
            return None
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in patch
        )
        query = sql.SQL("UPDATE refresh_tokens SET {} WHERE id = %s RETURNING *").format(
            assignments
        )
        with self._connect() as conn:
            row = conn.execute(query, (*patch.values(), token_id)).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token_if_active(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> Optional[RefreshTokenRecord]:
        """Compare-and-revoke in one statement; None means zero rows were affected."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, last_used_at = %s
                WHERE id = %s AND is_revoked = FALSE
                RETURNING *
                """,
                (used_at or utcnow(), token_id),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_user_refresh_tokens(
        self, user_id: str, used_at: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, last_used_at = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (used_at or utcnow(), user_id),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (now or utcnow(),)
            )
            return cur.rowcount

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]
