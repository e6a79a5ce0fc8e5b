from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.memory import TokenMinter, random_token_value
from sessionward.storage.models import (
    DeviceInfo,
    Principal,
    RenewalStats,
    RenewalToken,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        identifier TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_activity_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        identifier TEXT PRIMARY KEY REFERENCES principal(identifier) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS renewal_token (
        id UUID PRIMARY KEY,
        token_value TEXT NOT NULL UNIQUE,
        subject TEXT NOT NULL REFERENCES principal(identifier) ON DELETE CASCADE,
        family_id UUID NOT NULL,
        device_info JSONB NOT NULL DEFAULT '{}'::jsonb,
        used_count INTEGER NOT NULL DEFAULT 0 CHECK (used_count >= 0),
        max_uses INTEGER NOT NULL CHECK (max_uses > 0),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        invalidated_at TIMESTAMPTZ,
        invalidated_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS renewal_token_family_idx ON renewal_token (family_id)",
    "CREATE INDEX IF NOT EXISTS renewal_token_subject_active_idx ON renewal_token (subject) WHERE is_active",
    """
    CREATE TABLE IF NOT EXISTS login_failure (
        identifier TEXT PRIMARY KEY,
        attempts INTEGER NOT NULL,
        window_started_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed principal and renewal-token store.

    Every state transition on ``renewal_token`` is a single conditional
    statement (or a row-locked transaction) so concurrent workers cannot
    both spend the same usage slot or both rotate a family.
    """

    def __init__(
        self,
        dsn: str,
        *,
        token_minter: TokenMinter = random_token_value,
        default_max_uses: int = 10,
        default_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.token_minter = token_minter
        self.default_max_uses = default_max_uses
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock
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
        """Create tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            identifier=row["identifier"],
            display_name=row["display_name"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            last_activity_at=row.get("last_activity_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _renewal_from_row(row: Dict[str, Any]) -> RenewalToken:
        device = row.get("device_info")
        if isinstance(device, str):
            device = json.loads(device)
        return RenewalToken(
            id=str(row["id"]),
            token_value=row["token_value"],
            subject=row["subject"],
            family_id=str(row["family_id"]),
            device_info=DeviceInfo.from_dict(device),
            used_count=int(row["used_count"]),
            max_uses=int(row["max_uses"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            expires_at=row["expires_at"],
            invalidated_at=row.get("invalidated_at"),
            invalidated_reason=row.get("invalidated_reason"),
        )

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        identifier: str,
        display_name: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> Principal:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO principal (identifier, display_name, role, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (identifier, display_name, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("principal already exists", {"field": "identifier"})
        return self._principal_from_row(row)

    def get_principal(self, identifier: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE identifier = %s", (identifier,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def set_principal_active(self, identifier: str, is_active: bool) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET is_active = %s WHERE identifier = %s RETURNING *",
                (is_active, identifier),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def touch_activity(self, identifier: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET last_activity_at = %s WHERE identifier = %s",
                (self.clock(), identifier),
            )

    def save_password(
        self, identifier: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (identifier, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (identifier) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (identifier, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credentials", {"identifier": identifier}
            )

    def get_password_record(self, identifier: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE identifier = %s",
                (identifier,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- login failure window ---------------------------------------------

    def record_login_failure(self, identifier: str, window_seconds: int) -> int:
        now = self.clock()
        window_floor = now - timedelta(seconds=window_seconds)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_failure (identifier, attempts, window_started_at)
                VALUES (%s, 1, %s)
                ON CONFLICT (identifier) DO UPDATE
                SET attempts = CASE
                        WHEN login_failure.window_started_at <= %s THEN 1
                        ELSE login_failure.attempts + 1
                    END,
                    window_started_at = CASE
                        WHEN login_failure.window_started_at <= %s THEN EXCLUDED.window_started_at
                        ELSE login_failure.window_started_at
                    END
                RETURNING attempts
                """,
                (identifier, now, window_floor, window_floor),
            ).fetchone()
        return int(row["attempts"])

    def clear_login_failures(self, identifier: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_failure WHERE identifier = %s", (identifier,))

    # -- renewal tokens ---------------------------------------------------

    def create_renewal_token(
        self,
        subject: str,
        device_info: DeviceInfo,
        family_id: Optional[str] = None,
        *,
        max_uses: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
    ) -> RenewalToken:
        now = self.clock()
        token_id = str(uuid.uuid4())
        family = family_id or str(uuid.uuid4())
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = now + timedelta(seconds=ttl)
        value = self.token_minter(token_id, subject, family, expires_at)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO renewal_token (
                        id, token_value, subject, family_id, device_info, used_count,
                        max_uses, is_active, created_at, last_used_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, 0, %s, TRUE, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token_id,
                        value,
                        subject,
                        family,
                        json.dumps(device_info.to_dict()),
                        max_uses if max_uses is not None else self.default_max_uses,
                        now,
                        now,
                        expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("principal does not exist", {"subject": subject})
        except errors.UniqueViolation:
            raise ConstraintViolation("token value collision", {"field": "token_value"})
        return self._renewal_from_row(row)

    def get_by_token_value(self, token_value: str) -> Optional[RenewalToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM renewal_token WHERE token_value = %s", (token_value,)
            ).fetchone()
        return self._renewal_from_row(row) if row else None

    def get_renewal_token(self, token_id: str) -> Optional[RenewalToken]:
        try:
            uuid.UUID(str(token_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM renewal_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._renewal_from_row(row) if row else None

    def list_active_for_subject(self, subject: str) -> List[RenewalToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM renewal_token
                WHERE subject = %s AND is_active
                ORDER BY created_at DESC
                """,
                (subject,),
            ).fetchall()
        return [self._renewal_from_row(row) for row in rows]

    def increment_usage(
        self, token_id: str, expected_used_count: int
    ) -> Optional[RenewalToken]:
        now = self.clock()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE renewal_token
                SET used_count = used_count + 1, last_used_at = %s
                WHERE id = %s
                  AND used_count = %s
                  AND is_active
                  AND expires_at > %s
                  AND used_count < max_uses
                RETURNING *
                """,
                (now, token_id, expected_used_count, now),
            ).fetchone()
        return self._renewal_from_row(row) if row else None

    def invalidate(self, token_id: str, reason: str = "logout") -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE renewal_token
                SET is_active = FALSE, invalidated_at = %s, invalidated_reason = %s
                WHERE id = %s AND is_active
                """,
                (self.clock(), reason, token_id),
            )
            return cur.rowcount > 0

    def invalidate_family(
        self,
        family_id: str,
        *,
        expected_active_id: Optional[str] = None,
        reason: str = "rotated",
    ) -> int:
        with self._connect() as conn:
            if expected_active_id is not None:
                # Row lock serializes competing rotations of the same family
                claimed = conn.execute(
                    """
                    SELECT is_active FROM renewal_token
                    WHERE id = %s AND family_id = %s
                    FOR UPDATE
                    """,
                    (expected_active_id, family_id),
                ).fetchone()
                if not claimed or not claimed["is_active"]:
                    return 0
            cur = conn.execute(
                """
                UPDATE renewal_token
                SET is_active = FALSE, invalidated_at = %s, invalidated_reason = %s
                WHERE family_id = %s AND is_active
                """,
                (self.clock(), reason, family_id),
            )
            return cur.rowcount

    def invalidate_all_for_subject(self, subject: str, reason: str = "revoked_all") -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE renewal_token
                SET is_active = FALSE, invalidated_at = %s, invalidated_reason = %s
                WHERE subject = %s AND is_active
                """,
                (self.clock(), reason, subject),
            )
            return cur.rowcount

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE renewal_token
                SET is_active = FALSE, invalidated_at = %s, invalidated_reason = 'expired_cleanup'
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            count = cur.rowcount
        if count:
            self.logger.info("renewal_tokens_cleaned_up", count=count)
        return count

    def renewal_stats(self, subject: Optional[str] = None) -> RenewalStats:
        now = self.clock()
        query = """
            SELECT family_id, device_info->>'device_id' AS device_id,
                   is_active, expires_at
            FROM renewal_token
        """
        params: tuple = ()
        if subject is not None:
            query += " WHERE subject = %s"
            params = (subject,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        stats = RenewalStats()
        for row in rows:
            expired = row["expires_at"] <= now
            stats.total += 1
            if row["is_active"] and not expired:
                stats.active += 1
            if expired:
                stats.expired += 1
            device = row.get("device_id") or "unknown"
            stats.by_device[device] = stats.by_device.get(device, 0) + 1
            family = str(row["family_id"])
            stats.by_family[family] = stats.by_family.get(family, 0) + 1
        return stats
