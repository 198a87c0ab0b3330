from __future__ import annotations

import hmac
import json
import copy
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from studybuddy.logging import get_logger
from studybuddy.storage.common import (
    check_record_kind,
    ensure_aware,
    normalize_email,
    token_fields,
)
from studybuddy.storage.errors import ConstraintViolation
from studybuddy.storage.models import (
    STUDY_RECORD_KINDS,
    Account,
    AccountStatus,
    OneTimeTokenPurpose,
    StudyRecord,
    utcnow,
)

_ACCOUNT_DATETIME_FIELDS = (
    "refresh_token_expires_at",
    "email_verification_expires_at",
    "reset_token_expires_at",
    "password_changed_at",
    "last_login_at",
    "deactivated_at",
    "created_at",
    "updated_at",
)


class MemoryStore:
    """In-process credential store persisted to a JSON snapshot under ``fs_root``.

    Every public method holds ``_data_lock`` for its whole read-modify-write,
    which gives the same single-step guarantees the Postgres store gets from
    one ``UPDATE`` statement. Returned accounts are copies; mutating them has
    no effect on stored state.
    """

    def __init__(self, fs_root: str = "/tmp/studybuddy") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.study_records: Dict[str, Dict[str, StudyRecord]] = {
            kind: {} for kind in STUDY_RECORD_KINDS
        }
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_aware(datetime.fromisoformat(raw)) if raw else None

    @staticmethod
    def _copy(account: Account) -> Account:
        return replace(account, preferences=copy.deepcopy(account.preferences))

    def verify_connection(self) -> None:
        self._state_path()

    # accounts
    def create_account(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> Account:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(email, password_hash, name=name)
            self.accounts[account.id] = account
            self._persist_state()
            return self._copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return self._copy(account) if account else None

    def _mutate(self, account_id: str, **changes: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for key, value in changes.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self._persist_state()
            return self._copy(account)

    # one-time tokens
    def find_account_by_token(
        self, purpose: OneTimeTokenPurpose, token_hash: str
    ) -> Optional[Account]:
        hash_field, _ = token_fields(purpose)
        with self._data_lock:
            for account in self.accounts.values():
                stored = getattr(account, hash_field)
                if stored and hmac.compare_digest(stored, token_hash):
                    return self._copy(account)
            return None

    def set_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        hash_field, expiry_field = token_fields(purpose)
        self._mutate(account_id, **{hash_field: token_hash, expiry_field: expires_at})

    def clear_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        expected_hash: Optional[str] = None,
    ) -> bool:
        hash_field, expiry_field = token_fields(purpose)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            stored = getattr(account, hash_field)
            if expected_hash is not None and stored != expected_hash:
                return False
            self._mutate(account_id, **{hash_field: None, expiry_field: None})
            return True

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._mutate(
            account_id,
            is_email_verified=True,
            email_verification_token_hash=None,
            email_verification_expires_at=None,
        )

    # refresh chain
    def set_refresh_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        self._mutate(
            account_id, refresh_token_hash=token_hash, refresh_token_expires_at=expires_at
        )

    def rotate_refresh_token(
        self,
        account_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.refresh_token_hash != expected_hash:
                return False
            self._mutate(
                account_id,
                refresh_token_hash=new_hash,
                refresh_token_expires_at=expires_at,
            )
            return True

    def clear_refresh_token(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if expected_hash is not None and account.refresh_token_hash != expected_hash:
                return False
            self._mutate(account_id, refresh_token_hash=None, refresh_token_expires_at=None)
            return True

    def revoke_sessions(self, account_id: str) -> Optional[int]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = self._mutate(
                account_id,
                token_version=account.token_version + 1,
                refresh_token_hash=None,
                refresh_token_expires_at=None,
            )
            return updated.token_version if updated else None

    def update_password(
        self, account_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            return self._mutate(
                account_id,
                password_hash=password_hash,
                password_changed_at=changed_at,
                token_version=account.token_version + 1,
                refresh_token_hash=None,
                refresh_token_expires_at=None,
                reset_token_hash=None,
                reset_token_expires_at=None,
            )

    def set_status(
        self, account_id: str, status: AccountStatus, *, revoke_sessions: bool
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            changes: Dict[str, Any] = {"status": AccountStatus(status)}
            if status == AccountStatus.DEACTIVATED:
                changes["deactivated_at"] = utcnow()
            elif status == AccountStatus.ACTIVE:
                changes["deactivated_at"] = None
            if revoke_sessions:
                changes.update(
                    token_version=account.token_version + 1,
                    refresh_token_hash=None,
                    refresh_token_expires_at=None,
                )
            return self._mutate(account_id, **changes)

    def record_login(
        self, account_id: str, ip_addr: Optional[str], at: datetime
    ) -> None:
        self._mutate(account_id, last_login_at=at, last_login_ip=ip_addr)

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            changes: Dict[str, Any] = {}
            if name is not None:
                changes["name"] = name
            if avatar is not None:
                changes["avatar"] = avatar
            if preferences:
                changes["preferences"] = {**(account.preferences or {}), **preferences}
            return self._mutate(account_id, **changes)

    # account-owned records
    def add_study_record(
        self, kind: str, account_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> StudyRecord:
        check_record_kind(kind)
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account missing", {"account_id": account_id})
            record = StudyRecord(
                id=str(uuid.uuid4()),
                account_id=account_id,
                kind=kind,
                payload=dict(payload or {}),
            )
            self.study_records[kind][record.id] = record
            self._persist_state()
            return record

    def list_study_records(self, kind: str, account_id: str) -> List[StudyRecord]:
        check_record_kind(kind)
        with self._data_lock:
            return [
                r for r in self.study_records[kind].values() if r.account_id == account_id
            ]

    def delete_study_records(self, kind: str, account_id: str) -> int:
        check_record_kind(kind)
        with self._data_lock:
            doomed = [
                rid
                for rid, record in self.study_records[kind].items()
                if record.account_id == account_id
            ]
            for rid in doomed:
                self.study_records[kind].pop(rid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "study_records": [
                self._serialize_record(r)
                for records in self.study_records.values()
                for r in records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.study_records = {kind: {} for kind in STUDY_RECORD_KINDS}
        for raw in data.get("study_records", []):
            record = self._deserialize_record(raw)
            if record.kind in self.study_records:
                self.study_records[record.kind][record.id] = record
        self.logger.info(
            "memory_store_loaded", path=str(path), accounts=len(self.accounts)
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        data = {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "name": account.name,
            "avatar": account.avatar,
            "is_email_verified": account.is_email_verified,
            "status": account.status.value,
            "token_version": account.token_version,
            "refresh_token_hash": account.refresh_token_hash,
            "email_verification_token_hash": account.email_verification_token_hash,
            "reset_token_hash": account.reset_token_hash,
            "last_login_ip": account.last_login_ip,
            "preferences": account.preferences,
        }
        for key in _ACCOUNT_DATETIME_FIELDS:
            data[key] = self._serialize_datetime(getattr(account, key))
        return data

    def _deserialize_account(self, data: dict) -> Account:
        datetimes = {
            key: self._deserialize_datetime(data.get(key)) for key in _ACCOUNT_DATETIME_FIELDS
        }
        created_at = datetimes.pop("created_at") or utcnow()
        updated_at = datetimes.pop("updated_at") or created_at
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name"),
            avatar=data.get("avatar") or "",
            is_email_verified=bool(data.get("is_email_verified", False)),
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            token_version=int(data.get("token_version", 0)),
            refresh_token_hash=data.get("refresh_token_hash"),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            reset_token_hash=data.get("reset_token_hash"),
            last_login_ip=data.get("last_login_ip"),
            preferences=data.get("preferences") or {},
            created_at=created_at,
            updated_at=updated_at,
            **datetimes,
        )

    def _serialize_record(self, record: StudyRecord) -> dict:
        return {
            "id": record.id,
            "account_id": record.account_id,
            "kind": record.kind,
            "payload": record.payload,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_record(self, data: dict) -> StudyRecord:
        return StudyRecord(
            id=data["id"],
            account_id=data["account_id"],
            kind=data["kind"],
            payload=data.get("payload") or {},
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
