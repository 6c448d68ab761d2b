from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from yoink.logging import get_logger
from yoink.storage.errors import ConstraintViolation, StorageError
from yoink.storage.models import (
    PRIVILEGED_ROLES,
    ApiToken,
    GuardOutcome,
    MembershipRole,
    Organization,
    OrganizationMembership,
    User,
    UserSession,
)

_PRIVILEGED_VALUES = tuple(sorted(role.value for role in PRIVILEGED_ROLES))

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        organization_id TEXT NOT NULL REFERENCES organization(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id TEXT REFERENCES organization(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_token_user_idx ON api_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        current_organization_id TEXT NOT NULL REFERENCES organization(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_user_idx ON user_session (user_id)",
    "CREATE INDEX IF NOT EXISTS user_session_expires_idx ON user_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS organization_membership (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('owner', 'admin', 'member')),
        is_personal_org BOOLEAN NOT NULL DEFAULT FALSE,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, organization_id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS organization_membership_personal_idx
        ON organization_membership (user_id) WHERE is_personal_org
    """,
    "CREATE INDEX IF NOT EXISTS organization_membership_org_idx ON organization_membership (organization_id)",
)


class _PostgresTable:
    """Shared plumbing for the per-table stores: pooled connections and
    translation of driver errors into storage errors."""

    store_name = "postgres"

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{self.store_name} unique constraint violated",
                {"operation": operation},
                store=self.store_name,
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                f"{self.store_name} reference missing",
                {"operation": operation},
                store=self.store_name,
            ) from exc
        except psycopg.Error as exc:
            raise StorageError(
                f"{self.store_name}.{operation} failed", store=self.store_name, cause=exc
            ) from exc


class PostgresOrganizationStore(_PostgresTable):
    store_name = "organizations"

    def save(self, organization: Organization) -> None:
        with self._errors("save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO organization (id, name, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name
                """,
                (organization.id, organization.name, organization.created_at),
            )

    def find_by_id(self, organization_id: str) -> Optional[Organization]:
        with self._errors("find_by_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        if not row:
            return None
        return Organization(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def delete(self, organization_id: str) -> bool:
        with self._errors("delete"), self._connect() as conn:
            cur = conn.execute("DELETE FROM organization WHERE id = %s", (organization_id,))
            return cur.rowcount > 0


class PostgresUserStore(_PostgresTable):
    store_name = "users"

    def save(self, user: User) -> None:
        with self._errors("save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_user (id, email, organization_id, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email
                """,
                (user.id, user.email, user.organization_id, user.created_at),
            )

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._errors("find_by_id"), self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._to_user(row) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        with self._errors("find_by_email"), self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._to_user(row) if row else None

    def delete(self, user_id: str) -> bool:
        # tokens, sessions and memberships go with the user via ON DELETE CASCADE
        with self._errors("delete"), self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    @staticmethod
    def _to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            organization_id=str(row["organization_id"]),
            created_at=row["created_at"],
        )


class PostgresTokenStore(_PostgresTable):
    store_name = "tokens"

    def save(self, token: ApiToken) -> None:
        with self._errors("save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_token (id, user_id, organization_id, token_hash, name, created_at, last_used_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.organization_id,
                    token.token_hash,
                    token.name,
                    token.created_at,
                    token.last_used_at,
                ),
            )

    def find_by_id(self, token_id: str) -> Optional[ApiToken]:
        with self._errors("find_by_id"), self._connect() as conn:
            row = conn.execute("SELECT * FROM api_token WHERE id = %s", (token_id,)).fetchone()
        return self._to_token(row) if row else None

    def find_by_user_id(self, user_id: str) -> List[ApiToken]:
        with self._errors("find_by_user_id"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._to_token(row) for row in rows]

    def update_last_used(self, token_id: str, timestamp: datetime) -> None:
        # GREATEST keeps last_used_at monotonic when concurrent requests land out of order
        with self._errors("update_last_used"), self._connect() as conn:
            conn.execute(
                """
                UPDATE api_token
                SET last_used_at = GREATEST(COALESCE(last_used_at, %s), %s)
                WHERE id = %s
                """,
                (timestamp, timestamp, token_id),
            )

    def delete(self, token_id: str) -> bool:
        with self._errors("delete"), self._connect() as conn:
            cur = conn.execute("DELETE FROM api_token WHERE id = %s", (token_id,))
            return cur.rowcount > 0

    def has_any_tokens(self) -> bool:
        with self._errors("has_any_tokens"), self._connect() as conn:
            row = conn.execute("SELECT EXISTS (SELECT 1 FROM api_token) AS present").fetchone()
        return bool(row and row["present"])

    @staticmethod
    def _to_token(row: Dict[str, Any]) -> ApiToken:
        org_id = row.get("organization_id")
        return ApiToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            name=row["name"],
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            organization_id=str(org_id) if org_id else None,
        )


class PostgresSessionStore(_PostgresTable):
    store_name = "sessions"

    def save(self, session: UserSession) -> None:
        with self._errors("save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_session (id, user_id, current_organization_id, created_at, expires_at, last_active_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.current_organization_id,
                    session.created_at,
                    session.expires_at,
                    session.last_active_at,
                ),
            )

    def find_by_id(self, session_id: str) -> Optional[UserSession]:
        with self._errors("find_by_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._to_session(row) if row else None

    def find_by_user_id(self, user_id: str) -> List[UserSession]:
        with self._errors("find_by_user_id"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._to_session(row) for row in rows]

    def update_last_active(
        self, session_id: str, timestamp: datetime, expires_at: datetime
    ) -> None:
        with self._errors("update_last_active"), self._connect() as conn:
            conn.execute(
                """
                UPDATE user_session
                SET last_active_at = GREATEST(last_active_at, %s),
                    expires_at = GREATEST(expires_at, %s)
                WHERE id = %s
                """,
                (timestamp, expires_at, session_id),
            )

    def update_current_organization(
        self, session_id: str, user_id: str, organization_id: str
    ) -> bool:
        """Pin the session to ``organization_id`` only while the user is a member.

        The membership row is share-locked, so a concurrent leave either waits
        for this update (and then re-pins it) or has already removed the row.
        """
        with self._errors("update_current_organization"), self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET current_organization_id = %s
                WHERE id = %s AND user_id = %s
                  AND EXISTS (
                    SELECT 1 FROM organization_membership
                    WHERE user_id = %s AND organization_id = %s
                    FOR SHARE
                  )
                """,
                (organization_id, session_id, user_id, user_id, organization_id),
            )
            return cur.rowcount > 0

    def repin_sessions(self, user_id: str, from_org_id: str, to_org_id: str) -> int:
        with self._errors("repin_sessions"), self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET current_organization_id = %s
                WHERE user_id = %s AND current_organization_id = %s
                """,
                (to_org_id, user_id, from_org_id),
            )
            return cur.rowcount

    def delete(self, session_id: str) -> bool:
        with self._errors("delete"), self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def delete_by_user_id(self, user_id: str) -> int:
        with self._errors("delete_by_user_id"), self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired(self, now: datetime) -> int:
        with self._errors("delete_expired"), self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

    @staticmethod
    def _to_session(row: Dict[str, Any]) -> UserSession:
        return UserSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            current_organization_id=str(row["current_organization_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_active_at=row["last_active_at"],
        )


class PostgresMembershipStore(_PostgresTable):
    store_name = "memberships"

    def save(self, membership: OrganizationMembership) -> None:
        with self._errors("save"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO organization_membership (id, user_id, organization_id, role, is_personal_org, joined_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    membership.id,
                    membership.user_id,
                    membership.organization_id,
                    membership.role.value,
                    membership.is_personal_org,
                    membership.joined_at,
                ),
            )

    def find_by_id(self, membership_id: str) -> Optional[OrganizationMembership]:
        with self._errors("find_by_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_membership WHERE id = %s", (membership_id,)
            ).fetchone()
        return self._to_membership(row) if row else None

    def find_by_user_and_org(
        self, user_id: str, organization_id: str
    ) -> Optional[OrganizationMembership]:
        with self._errors("find_by_user_and_org"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM organization_membership
                WHERE user_id = %s AND organization_id = %s
                """,
                (user_id, organization_id),
            ).fetchone()
        return self._to_membership(row) if row else None

    def find_by_user_id(self, user_id: str) -> List[OrganizationMembership]:
        with self._errors("find_by_user_id"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization_membership WHERE user_id = %s ORDER BY joined_at",
                (user_id,),
            ).fetchall()
        return [self._to_membership(row) for row in rows]

    def find_by_organization_id(self, organization_id: str) -> List[OrganizationMembership]:
        with self._errors("find_by_organization_id"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization_membership WHERE organization_id = %s ORDER BY joined_at",
                (organization_id,),
            ).fetchall()
        return [self._to_membership(row) for row in rows]

    def count_privileged_members(self, organization_id: str) -> int:
        with self._errors("count_privileged_members"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS privileged FROM organization_membership
                WHERE organization_id = %s AND role = ANY(%s)
                """,
                (organization_id, list(_PRIVILEGED_VALUES)),
            ).fetchone()
        return int(row["privileged"]) if row else 0

    def update_role(self, membership_id: str, role: MembershipRole) -> None:
        with self._errors("update_role"), self._connect() as conn:
            conn.execute(
                "UPDATE organization_membership SET role = %s WHERE id = %s",
                (MembershipRole(role).value, membership_id),
            )

    def delete(self, membership_id: str) -> bool:
        with self._errors("delete"), self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM organization_membership WHERE id = %s", (membership_id,)
            )
            return cur.rowcount > 0

    def _lock_org_rows(self, conn, membership_id: str) -> Optional[tuple[Dict[str, Any], int]]:
        """Lock every membership row of the target's organization.

        Returns the locked target row and the organization's privileged count,
        or None when the membership no longer exists.
        """
        head = conn.execute(
            "SELECT organization_id FROM organization_membership WHERE id = %s",
            (membership_id,),
        ).fetchone()
        if not head:
            return None
        rows = conn.execute(
            """
            SELECT id, role FROM organization_membership
            WHERE organization_id = %s
            FOR UPDATE
            """,
            (head["organization_id"],),
        ).fetchall()
        target = next((row for row in rows if str(row["id"]) == membership_id), None)
        if target is None:
            return None
        privileged = sum(1 for row in rows if row["role"] in _PRIVILEGED_VALUES)
        return target, privileged

    def delete_unless_last_privileged(self, membership_id: str) -> GuardOutcome:
        with self._errors("delete_unless_last_privileged"), self._connect() as conn, conn.transaction():
            locked = self._lock_org_rows(conn, membership_id)
            if locked is None:
                return GuardOutcome.MISSING
            target, privileged = locked
            if target["role"] in _PRIVILEGED_VALUES and privileged <= 1:
                return GuardOutcome.REFUSED
            conn.execute("DELETE FROM organization_membership WHERE id = %s", (membership_id,))
            return GuardOutcome.APPLIED

    def update_role_unless_last_privileged(
        self, membership_id: str, role: MembershipRole
    ) -> GuardOutcome:
        role = MembershipRole(role)
        with self._errors("update_role_unless_last_privileged"), self._connect() as conn, conn.transaction():
            locked = self._lock_org_rows(conn, membership_id)
            if locked is None:
                return GuardOutcome.MISSING
            target, privileged = locked
            demoting = target["role"] in _PRIVILEGED_VALUES and role not in PRIVILEGED_ROLES
            if demoting and privileged <= 1:
                return GuardOutcome.REFUSED
            conn.execute(
                "UPDATE organization_membership SET role = %s WHERE id = %s",
                (role.value, membership_id),
            )
            return GuardOutcome.APPLIED

    @staticmethod
    def _to_membership(row: Dict[str, Any]) -> OrganizationMembership:
        return OrganizationMembership(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            organization_id=str(row["organization_id"]),
            role=MembershipRole(row["role"]),
            is_personal_org=bool(row.get("is_personal_org")),
            joined_at=row["joined_at"],
        )


class PostgresStore:
    """Postgres backing for every auth store contract over one connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._bind_tables()
        self.ensure_schema()

    def _bind_tables(self) -> None:
        self.organizations = PostgresOrganizationStore(self.pool)
        self.users = PostgresUserStore(self.pool)
        self.tokens = PostgresTokenStore(self.pool)
        self.sessions = PostgresSessionStore(self.pool)
        self.memberships = PostgresMembershipStore(self.pool)

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""
        try:
            with self.pool.connection() as conn:
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
        except psycopg.Error as exc:
            self.logger.error("schema_bootstrap_failed", error=str(exc))
            raise StorageError("schema bootstrap failed", store="postgres", cause=exc) from exc

    def ping(self) -> bool:
        try:
            with self.pool.connection() as conn:
                conn.execute("SELECT 1")
        except psycopg.Error as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True

    def close(self) -> None:
        self.pool.close()
