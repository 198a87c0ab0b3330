from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from studybuddy.logging import get_logger
from studybuddy.storage.common import (
    check_record_kind,
    ensure_aware,
    normalize_email,
    token_fields,
)
from studybuddy.storage.errors import ConstraintViolation, SchemaMissing
from studybuddy.storage.models import (
    Account,
    AccountStatus,
    OneTimeTokenPurpose,
    StudyRecord,
    utcnow,
)

# record kind -> table name; both sides are fixed identifiers, never user input
_RECORD_TABLES: Dict[str, str] = {
    "subjects": "subject",
    "notes": "note",
    "flashcards": "flashcard",
    "study_sessions": "study_session",
}

_REQUIRED_TABLES = ("account",) + tuple(_RECORD_TABLES.values())


class PostgresStore:
    """Postgres-backed credential store.

    Each mutation is one statement, so version bumps and refresh-chain
    changes land atomically without explicit transactions.
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
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the account and study-record tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise SchemaMissing(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _row_to_account(row: Optional[dict]) -> Optional[Account]:
        if not row:
            return None
        preferences = row.get("preferences") or {}
        if isinstance(preferences, str):
            preferences = json.loads(preferences)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            avatar=row.get("avatar") or "",
            is_email_verified=bool(row.get("is_email_verified", False)),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            token_version=int(row.get("token_version") or 0),
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expires_at=ensure_aware(row.get("refresh_token_expires_at")),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=ensure_aware(
                row.get("email_verification_expires_at")
            ),
            reset_token_hash=row.get("reset_token_hash"),
            reset_token_expires_at=ensure_aware(row.get("reset_token_expires_at")),
            password_changed_at=ensure_aware(row.get("password_changed_at")),
            last_login_at=ensure_aware(row.get("last_login_at")),
            last_login_ip=row.get("last_login_ip"),
            deactivated_at=ensure_aware(row.get("deactivated_at")),
            preferences=preferences,
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    def _update_returning(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_account(row)

    # accounts
    def create_account(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> Account:
        account = Account.new(normalize_email(email), password_hash, name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, name, status, token_version,
                                         preferences, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, 0, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.name,
                        account.status.value,
                        json.dumps(account.preferences),
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row)

    # one-time tokens
    def find_account_by_token(
        self, purpose: OneTimeTokenPurpose, token_hash: str
    ) -> Optional[Account]:
        hash_col, _ = token_fields(purpose)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {hash_col} = %s", (token_hash,)
            ).fetchone()
        return self._row_to_account(row)

    def set_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        hash_col, expiry_col = token_fields(purpose)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE account SET {hash_col} = %s, {expiry_col} = %s, updated_at = now() WHERE id = %s",
                (token_hash, expires_at, account_id),
            )

    def clear_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        expected_hash: Optional[str] = None,
    ) -> bool:
        hash_col, expiry_col = token_fields(purpose)
        sql = f"UPDATE account SET {hash_col} = NULL, {expiry_col} = NULL, updated_at = now() WHERE id = %s"
        params: tuple = (account_id,)
        if expected_hash is not None:
            sql += f" AND {hash_col} = %s"
            params = (account_id, expected_hash)
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return result.rowcount > 0

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET is_email_verified = TRUE,
                email_verification_token_hash = NULL,
                email_verification_expires_at = NULL,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (account_id,),
        )

    # refresh chain
    def set_refresh_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET refresh_token_hash = %s, refresh_token_expires_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (token_hash, expires_at, account_id),
            )

    def rotate_refresh_token(
        self,
        account_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE account
                SET refresh_token_hash = %s, refresh_token_expires_at = %s, updated_at = now()
                WHERE id = %s AND refresh_token_hash = %s
                """,
                (new_hash, expires_at, account_id, expected_hash),
            )
            return result.rowcount > 0

    def clear_refresh_token(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        sql = (
            "UPDATE account SET refresh_token_hash = NULL, refresh_token_expires_at = NULL, "
            "updated_at = now() WHERE id = %s"
        )
        params: tuple = (account_id,)
        if expected_hash is not None:
            sql += " AND refresh_token_hash = %s"
            params = (account_id, expected_hash)
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return result.rowcount > 0

    def revoke_sessions(self, account_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET token_version = token_version + 1,
                    refresh_token_hash = NULL,
                    refresh_token_expires_at = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (account_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def update_password(
        self, account_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET password_hash = %s,
                password_changed_at = %s,
                token_version = token_version + 1,
                refresh_token_hash = NULL,
                refresh_token_expires_at = NULL,
                reset_token_hash = NULL,
                reset_token_expires_at = NULL,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (password_hash, changed_at, account_id),
        )

    def set_status(
        self, account_id: str, status: AccountStatus, *, revoke_sessions: bool
    ) -> Optional[Account]:
        status = AccountStatus(status)
        revoke_clause = (
            """,
                token_version = token_version + 1,
                refresh_token_hash = NULL,
                refresh_token_expires_at = NULL"""
            if revoke_sessions
            else ""
        )
        return self._update_returning(
            f"""
            UPDATE account
            SET status = %s,
                deactivated_at = CASE
                    WHEN %s = 'deactivated' THEN now()
                    WHEN %s = 'active' THEN NULL
                    ELSE deactivated_at
                END{revoke_clause},
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (status.value, status.value, status.value, account_id),
        )

    def record_login(
        self, account_id: str, ip_addr: Optional[str], at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s, last_login_ip = %s, updated_at = now() WHERE id = %s",
                (at, ip_addr, account_id),
            )

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET name = COALESCE(%s, name),
                avatar = COALESCE(%s, avatar),
                preferences = preferences || COALESCE(%s::jsonb, '{}'::jsonb),
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (
                name,
                avatar,
                json.dumps(preferences) if preferences else None,
                account_id,
            ),
        )

    # account-owned records
    def add_study_record(
        self, kind: str, account_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> StudyRecord:
        table = _RECORD_TABLES[check_record_kind(kind)]
        record = StudyRecord(
            id=str(uuid.uuid4()),
            account_id=account_id,
            kind=kind,
            payload=dict(payload or {}),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {table} (id, account_id, payload, created_at) VALUES (%s, %s, %s, %s)",
                    (record.id, account_id, json.dumps(record.payload), record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account missing", {"account_id": account_id})
        return record

    def list_study_records(self, kind: str, account_id: str) -> List[StudyRecord]:
        table = _RECORD_TABLES[check_record_kind(kind)]
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [
            StudyRecord(
                id=str(row["id"]),
                account_id=str(row["account_id"]),
                kind=kind,
                payload=row.get("payload") or {},
                created_at=ensure_aware(row.get("created_at")) or utcnow(),
            )
            for row in rows
        ]

    def delete_study_records(self, kind: str, account_id: str) -> int:
        table = _RECORD_TABLES[check_record_kind(kind)]
        with self._connect() as conn:
            result = conn.execute(
                f"DELETE FROM {table} WHERE account_id = %s", (account_id,)
            )
            return result.rowcount

    def delete_account(self, account_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account still owns records", {"account_id": account_id}
            )
