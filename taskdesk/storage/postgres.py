from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from taskdesk.logging import get_logger
from taskdesk.storage.errors import ConstraintViolation, StoreUnavailable
from taskdesk.storage.models import ActivityLog, OtpRecord, RefreshTokenRecord, User


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id UUID PRIMARY KEY,
        seq BIGSERIAL NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        otp_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS otp_code_user_unused_idx
        ON otp_code (user_id, created_at DESC, seq DESC) WHERE NOT is_used
    """,
    "CREATE INDEX IF NOT EXISTS otp_code_expires_idx ON otp_code (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id) WHERE NOT is_revoked",
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id UUID PRIMARY KEY,
        user_id UUID REFERENCES app_user(id) ON DELETE SET NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        old_values JSONB,
        new_values JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_log_user_idx ON activity_log (user_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Conditional writes (``mark_otp_used``, ``touch_refresh_token``,
    ``revoke_refresh_token``) are single ``UPDATE ... WHERE`` statements, so
    the row lock taken by the update serializes racing callers.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
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
        """Create credential tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except (errors.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    # row mapping

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            is_verified=bool(row.get("is_verified", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OtpRecord:
        return OtpRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            otp_hash=row["otp_hash"],
            expires_at=row["expires_at"],
            is_used=bool(row["is_used"]),
            created_at=row["created_at"],
            seq=int(row.get("seq") or 0),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            is_revoked=bool(row["is_revoked"]),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _activity_from_row(row: Dict[str, Any]) -> ActivityLog:
        return ActivityLog(
            id=str(row["id"]),
            action=row["action"],
            entity_type=row["entity_type"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            entity_id=row.get("entity_id"),
            old_values=row.get("old_values"),
            new_values=row.get("new_values"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # users

    def create_user(self, email: str) -> User:
        user = User.new(email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, is_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.is_verified, user.created_at, user.updated_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def mark_user_verified(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                   SET is_verified = TRUE,
                       updated_at = CASE WHEN is_verified THEN updated_at ELSE %s END
                 WHERE id = %s
                RETURNING *
                """,
                (now, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    # one-time codes

    def supersede_and_create_otp(
        self, user_id: str, otp_hash: str, expires_at: datetime, now: datetime
    ) -> Tuple[OtpRecord, int]:
        """Supersede open codes and insert a new one in a single transaction.

        The ``FOR UPDATE`` lock on the user row serializes concurrent issues
        for the same user, so the UPDATE of one request always sees the
        INSERT of the request that went before it.
        """
        otp_id = str(uuid.uuid4())
        with self._connect() as conn:
            owner = conn.execute(
                "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not owner:
                raise ConstraintViolation("otp user missing", {"user_id": user_id})
            superseded = conn.execute(
                "UPDATE otp_code SET is_used = TRUE WHERE user_id = %s AND NOT is_used",
                (user_id,),
            ).rowcount or 0
            row = conn.execute(
                """
                INSERT INTO otp_code (id, user_id, otp_hash, expires_at, is_used, created_at)
                VALUES (%s, %s, %s, %s, FALSE, %s)
                RETURNING *
                """,
                (otp_id, user_id, otp_hash, expires_at, now),
            ).fetchone()
        return self._otp_from_row(row), superseded

    def find_latest_unused_otp(self, user_id: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                 WHERE user_id = %s AND NOT is_used
                 ORDER BY created_at DESC, seq DESC
                 LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._otp_from_row(row)

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET is_used = TRUE WHERE id = %s AND NOT is_used RETURNING id",
                (otp_id,),
            ).fetchone()
        return row is not None

    def list_otps(self, user_id: str) -> List[OtpRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM otp_code WHERE user_id = %s ORDER BY seq",
                (user_id,),
            ).fetchall()
        return [self._otp_from_row(row) for row in rows]

    def delete_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_code WHERE expires_at < %s", (now,))
            return cur.rowcount or 0

    # refresh tokens

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> RefreshTokenRecord:
        token_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, expires_at, is_revoked, created_at)
                    VALUES (%s, %s, %s, %s, FALSE, %s)
                    RETURNING *
                    """,
                    (token_id, user_id, token_hash, expires_at, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return self._refresh_token_from_row(row)

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def touch_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                   SET last_used_at = %s
                 WHERE token_hash = %s AND NOT is_revoked AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        if not row:
            return None
        return self._refresh_token_from_row(row)

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE
                 WHERE token_hash = %s AND user_id = %s AND NOT is_revoked
                RETURNING id
                """,
                (token_hash, user_id),
            ).fetchone()
        return row is not None

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET is_revoked = TRUE WHERE user_id = %s AND NOT is_revoked",
                (user_id,),
            )
            return cur.rowcount or 0

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (before,)
            )
            return cur.rowcount or 0

    # activity log

    def record_activity(
        self,
        action: str,
        entity_type: str,
        *,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityLog:
        entry_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO activity_log (id, user_id, action, entity_type, entity_id, old_values, new_values, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry_id,
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    json.dumps(old_values) if old_values is not None else None,
                    json.dumps(new_values) if new_values is not None else None,
                    ip_address,
                    user_agent,
                ),
            ).fetchone()
        return self._activity_from_row(row)

    def list_activity(self, user_id: str, limit: int = 100) -> List[ActivityLog]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM activity_log
                 WHERE user_id = %s
                 ORDER BY created_at DESC
                 LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._activity_from_row(row) for row in rows]
