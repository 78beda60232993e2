from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from medauth.logging import get_logger
from medauth.storage.errors import ConstraintViolation
from medauth.storage.models import Account, Role, Session, ensure_utc, utcnow


class PostgresStore:
    """Postgres-backed account and durable session store."""

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
        """Create the account and session tables if they are missing."""

        with self._connect() as conn:
            conn.execute("CREATE EXTENSION IF NOT EXISTS citext")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email CITEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    profile JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_session (
                    id TEXT PRIMARY KEY,
                    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                    email CITEXT NOT NULL,
                    role TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL,
                    ip_addr TEXT,
                    user_agent TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)"
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        profile = row.get("profile")
        if isinstance(profile, str):
            try:
                profile = json.loads(profile)
            except ValueError:
                profile = None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.PATIENT.value),
            is_active=row.get("is_active", True),
            created_at=ensure_utc(row.get("created_at") or utcnow()),
            updated_at=ensure_utc(row.get("updated_at") or utcnow()),
            profile=profile or {},
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            role=Role(row["role"]),
            created_at=ensure_utc(row.get("created_at") or utcnow()),
            expires_at=ensure_utc(row["expires_at"]),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    # -- accounts -------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.PATIENT,
        profile: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Account:
        account = Account.new(email, password_hash, role, profile)
        account.is_active = is_active
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, is_active, profile, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.role.value,
                        account.is_active,
                        json.dumps(account.profile),
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def count_accounts(self, role: Optional[Role] = None) -> int:
        with self._connect() as conn:
            if role is None:
                row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM app_user WHERE role = %s",
                    (role.value,),
                ).fetchone()
        return int(row["total"]) if row else 0

    def update_account_role(self, account_id: str, role: Role) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role.value, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )

    # -- sessions -------------------------------------------------------

    def save_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, email, role, created_at, expires_at, ip_addr, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET expires_at = EXCLUDED.expires_at
                """,
                (
                    session.id,
                    session.user_id,
                    session.email,
                    session.role.value,
                    session.created_at,
                    session.expires_at,
                    session.ip_addr,
                    session.user_agent,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s RETURNING id",
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s RETURNING id",
                    (user_id,),
                ).fetchall()
        return [str(row["id"]) for row in rows]

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            removed = cur.rowcount
        if removed:
            self.logger.info("expired_sessions_purged", count=removed)
        return removed


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
