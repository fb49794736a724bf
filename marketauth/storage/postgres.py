from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from marketauth.logging import get_logger
from marketauth.storage.errors import ConstraintViolation, StorageUnavailable
from marketauth.storage.models import (
    ACTION_TOKEN_KINDS,
    DEFAULT_ROLE,
    EMAIL_VERIFY,
    PASSWORD_RESET,
    Account,
    ActionToken,
    RefreshSession,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'customer',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        jti TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        family_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_subject_idx ON refresh_session (subject_id)",
    "CREATE INDEX IF NOT EXISTS refresh_session_family_idx ON refresh_session (family_id)",
    """
    CREATE TABLE IF NOT EXISTS action_token (
        token TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        subject_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS action_token_subject_idx ON action_token (subject_id, kind)",
)


class PostgresStore:
    """Postgres-backed account, refresh session and action token store.

    Each public method runs in exactly one transaction: the pool commits when
    the ``with`` block exits cleanly and rolls back when it raises.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                # libpq rounds connect_timeout to whole seconds, minimum 2
                "connect_timeout": max(2, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.warning(
                "storage_unavailable", operation=operation, error=str(exc)
            )
            raise StorageUnavailable(operation=operation) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect("ping") as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # accounts
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            name=row.get("name"),
            role=row.get("role") or DEFAULT_ROLE,
            email_verified=bool(row.get("email_verified")),
            email_verified_at=row.get("email_verified_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_account(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        email_verified: bool = False,
    ) -> Account:
        account = Account.new(
            email,
            password_hash=password_hash,
            name=name,
            role=role,
            email_verified=email_verified,
        )
        try:
            with self._connect("create_account") as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, name, role, email_verified, email_verified_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.name,
                        account.role,
                        account.email_verified,
                        account.email_verified_at,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect("get_account") as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect("get_account_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    # refresh sessions
    @staticmethod
    def _session_from_row(row: dict) -> RefreshSession:
        return RefreshSession(
            jti=row["jti"],
            subject_id=str(row["subject_id"]),
            family_id=row["family_id"],
            created_at=row.get("created_at") or utcnow(),
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
        )

    def insert_refresh_session(
        self, subject_id: str, jti: str, family_id: Optional[str] = None
    ) -> bool:
        try:
            with self._connect("insert_refresh_session") as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_session (jti, subject_id, family_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (jti) DO NOTHING
                    RETURNING jti
                    """,
                    (jti, subject_id, family_id or jti),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session subject missing", {"subject_id": subject_id})
        return row is not None

    def get_refresh_session(self, jti: str) -> Optional[RefreshSession]:
        with self._connect("get_refresh_session") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE jti = %s", (jti,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_refresh_session(self, jti: str) -> bool:
        with self._connect("revoke_refresh_session") as conn:
            row = conn.execute(
                """
                UPDATE refresh_session SET revoked_at = now()
                WHERE jti = %s AND revoked_at IS NULL
                RETURNING jti
                """,
                (jti,),
            ).fetchone()
        return row is not None

    def replace_refresh_session(self, old_jti: str, subject_id: str, new_jti: str) -> bool:
        with self._connect("replace_refresh_session") as conn:
            revoked = conn.execute(
                """
                UPDATE refresh_session SET revoked_at = now(), replaced_by = %s
                WHERE jti = %s AND subject_id = %s AND revoked_at IS NULL
                RETURNING family_id
                """,
                (new_jti, old_jti, subject_id),
            ).fetchone()
            if not revoked:
                return False
            inserted = conn.execute(
                """
                INSERT INTO refresh_session (jti, subject_id, family_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                RETURNING jti
                """,
                (new_jti, subject_id, revoked["family_id"]),
            ).fetchone()
            if not inserted:
                # raising inside the block rolls back the revocation above
                raise ConstraintViolation("refresh session exists", {"jti": new_jti})
        return True

    def revoke_subject_sessions(self, subject_id: str) -> int:
        with self._connect("revoke_subject_sessions") as conn:
            cur = conn.execute(
                "UPDATE refresh_session SET revoked_at = now() WHERE subject_id = %s AND revoked_at IS NULL",
                (subject_id,),
            )
            return cur.rowcount or 0

    def revoke_family(self, family_id: str) -> int:
        with self._connect("revoke_family") as conn:
            cur = conn.execute(
                "UPDATE refresh_session SET revoked_at = now() WHERE family_id = %s AND revoked_at IS NULL",
                (family_id,),
            )
            return cur.rowcount or 0

    def purge_revoked_sessions(self, older_than: datetime) -> int:
        with self._connect("purge_revoked_sessions") as conn:
            cur = conn.execute(
                "DELETE FROM refresh_session WHERE revoked_at IS NOT NULL AND revoked_at < %s",
                (older_than,),
            )
            return cur.rowcount or 0

    def list_refresh_sessions(self, subject_id: str) -> List[RefreshSession]:
        with self._connect("list_refresh_sessions") as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_session WHERE subject_id = %s ORDER BY created_at",
                (subject_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # single-use action tokens
    @staticmethod
    def _action_token_from_row(row: dict) -> ActionToken:
        return ActionToken(
            token=row["token"],
            kind=row["kind"],
            subject_id=str(row["subject_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            used_at=row.get("used_at"),
        )

    def create_action_token(
        self,
        subject_id: str,
        kind: str,
        token: str,
        ttl_minutes: int,
        *,
        invalidate_pending: bool = False,
    ) -> ActionToken:
        if kind not in ACTION_TOKEN_KINDS:
            raise ValueError(f"unknown action token kind: {kind}")
        record = ActionToken.new(token, kind, subject_id, ttl_minutes)
        try:
            with self._connect("create_action_token") as conn:
                if invalidate_pending:
                    conn.execute(
                        """
                        UPDATE action_token SET used_at = now()
                        WHERE subject_id = %s AND kind = %s AND used_at IS NULL
                        """,
                        (subject_id, kind),
                    )
                conn.execute(
                    """
                    INSERT INTO action_token (token, kind, subject_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.token, record.kind, record.subject_id, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"subject_id": subject_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("action token exists", {"field": "token"})
        return record

    def get_action_token(self, token: str) -> Optional[ActionToken]:
        with self._connect("get_action_token") as conn:
            row = conn.execute(
                "SELECT * FROM action_token WHERE token = %s", (token,)
            ).fetchone()
        return self._action_token_from_row(row) if row else None

    def list_action_tokens(
        self, subject_id: str, kind: Optional[str] = None
    ) -> List[ActionToken]:
        query = "SELECT * FROM action_token WHERE subject_id = %s"
        params: list[Any] = [subject_id]
        if kind is not None:
            query += " AND kind = %s"
            params.append(kind)
        with self._connect("list_action_tokens") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._action_token_from_row(row) for row in rows]

    @staticmethod
    def _claim_action_token(conn, token: str, kind: str) -> Optional[str]:
        row = conn.execute(
            """
            UPDATE action_token SET used_at = now()
            WHERE token = %s AND kind = %s AND used_at IS NULL AND expires_at > now()
            RETURNING subject_id
            """,
            (token, kind),
        ).fetchone()
        return str(row["subject_id"]) if row else None

    def consume_email_verification(self, token: str) -> Optional[Account]:
        with self._connect("consume_email_verification") as conn:
            subject_id = self._claim_action_token(conn, token, EMAIL_VERIFY)
            if not subject_id:
                return None
            row = conn.execute(
                """
                UPDATE account
                SET email_verified = TRUE, email_verified_at = COALESCE(email_verified_at, now())
                WHERE id = %s
                RETURNING *
                """,
                (subject_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def consume_password_reset(self, token: str, password_hash: str) -> Optional[Account]:
        with self._connect("consume_password_reset") as conn:
            subject_id = self._claim_action_token(conn, token, PASSWORD_RESET)
            if not subject_id:
                return None
            row = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s RETURNING *",
                (password_hash, subject_id),
            ).fetchone()
            conn.execute(
                "UPDATE refresh_session SET revoked_at = now() WHERE subject_id = %s AND revoked_at IS NULL",
                (subject_id,),
            )
        return self._account_from_row(row) if row else None

    def set_password_and_revoke_sessions(self, account_id: str, password_hash: str) -> int:
        with self._connect("set_password_and_revoke_sessions") as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, account_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            cur = conn.execute(
                "UPDATE refresh_session SET revoked_at = now() WHERE subject_id = %s AND revoked_at IS NULL",
                (account_id,),
            )
            return cur.rowcount or 0
