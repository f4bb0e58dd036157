from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, UnknownFieldError
from gatehouse.storage.models import (
    ROLE_ADMIN,
    ROLE_USER,
    USER_MUTABLE_FIELDS,
    ActivityLog,
    SecondFactorCode,
    TrustedDevice,
    User,
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        hashed_refresh_token TEXT,
        password_reset_token_hash TEXT,
        password_reset_expiry TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_code (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        user_agent TEXT NOT NULL,
        device_token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS trusted_device_user_idx ON trusted_device (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_activity_log (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_activity_log_created_idx ON user_activity_log (created_at)",
)


def _check_fields(fields: Dict[str, Any]) -> None:
    # Column names are interpolated into SQL, so only known columns pass
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise UnknownFieldError(f"unknown user fields: {sorted(unknown)}")


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        role=row.get("role", ROLE_USER),
        is_active=row.get("is_active", True),
        verified=row.get("verified", False),
        hashed_refresh_token=row.get("hashed_refresh_token"),
        password_reset_token_hash=row.get("password_reset_token_hash"),
        password_reset_expiry=row.get("password_reset_expiry"),
        two_factor_enabled=row.get("two_factor_enabled", False),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row.get("last_login_at"),
    )


def _code_from_row(row: Dict[str, Any]) -> SecondFactorCode:
    return SecondFactorCode(
        user_id=str(row["user_id"]),
        code_hash=row["code_hash"],
        expires_at=row["expires_at"],
        attempts=row["attempts"],
        created_at=row["created_at"],
    )


def _device_from_row(row: Dict[str, Any]) -> TrustedDevice:
    return TrustedDevice(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        user_agent=row["user_agent"],
        device_token_hash=row["device_token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bootstrap_admin: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                first = False
                if bootstrap_admin:
                    # Serializes concurrent first registrations
                    conn.execute("LOCK TABLE app_user IN SHARE ROW EXCLUSIVE MODE")
                    row = conn.execute("SELECT count(*) AS n FROM app_user").fetchone()
                    first = row["n"] == 0
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, role, verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        password_hash,
                        first_name,
                        last_name,
                        ROLE_ADMIN if first else ROLE_USER,
                        first,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if first:
            self.logger.info("bootstrap_admin_created", user_id=user_id)
        return _user_from_row(row)

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM app_user").fetchone()
        return int(row["n"])

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        return self.update_user_if(user_id, {}, **fields)

    def update_user_if(
        self, user_id: str, expected: Dict[str, Any], **fields: Any
    ) -> Optional[User]:
        """Conditional update: ``expected`` columns must still hold their values."""
        _check_fields(expected)
        _check_fields(fields)
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        conditions = "".join(
            f" AND {name} IS NOT DISTINCT FROM %s" for name in expected
        )
        params = [*fields.values(), user_id, *expected.values()]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() "
                f"WHERE id = %s{conditions} RETURNING *",
                params,
            ).fetchone()
        return _user_from_row(row) if row else None

    # -- second factor codes -----------------------------------------------

    def upsert_second_factor_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> SecondFactorCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO two_factor_code (user_id, code_hash, expires_at, attempts, created_at)
                VALUES (%s, %s, %s, 0, now())
                ON CONFLICT (user_id) DO UPDATE
                SET code_hash = EXCLUDED.code_hash,
                    expires_at = EXCLUDED.expires_at,
                    attempts = 0,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (user_id, code_hash, expires_at),
            ).fetchone()
        return _code_from_row(row)

    def get_second_factor_code(self, user_id: str) -> Optional[SecondFactorCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_code WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _code_from_row(row) if row else None

    def delete_second_factor_code(
        self, user_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            if code_hash is None:
                cur = conn.execute(
                    "DELETE FROM two_factor_code WHERE user_id = %s", (user_id,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM two_factor_code WHERE user_id = %s AND code_hash = %s",
                    (user_id, code_hash),
                )
            return cur.rowcount > 0

    def update_second_factor_attempts(
        self, user_id: str, *, code_hash: str
    ) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_code SET attempts = attempts + 1
                WHERE user_id = %s AND code_hash = %s
                RETURNING attempts
                """,
                (user_id, code_hash),
            ).fetchone()
        return row["attempts"] if row else None

    # -- trusted devices ---------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO trusted_device (id, user_id, user_agent, device_token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.id,
                        device.user_id,
                        device.user_agent,
                        device.device_token_hash,
                        device.expires_at,
                        device.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("device owner missing", {"user_id": device.user_id})
        return device

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_device_from_row(row) for row in rows]

    # -- activity ----------------------------------------------------------

    def record_activity(
        self,
        user_id: str,
        action: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            id=str(uuid.uuid4()), user_id=user_id, action=action, ip=ip, user_agent=user_agent
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_activity_log (id, user_id, action, ip, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (entry.id, user_id, action, ip, user_agent, entry.created_at),
            )
        return entry

    def list_activity(self, user_id: str) -> List[ActivityLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_activity_log WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            ActivityLog(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                action=row["action"],
                ip=row.get("ip"),
                user_agent=row.get("user_agent"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def purge_activity_before(self, threshold: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_activity_log WHERE created_at < %s", (threshold,)
            )
            return cur.rowcount
