"""Storage contract and helpers shared between memory and postgres implementations.

Both backends expose the same ``CredentialStore`` surface so the service layer
never needs to know which one it is talking to. Every method that changes more
than one field does so in a single step; callers rely on that for revocation.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from studybuddy.storage.errors import ConstraintViolation
from studybuddy.storage.models import (
    STUDY_RECORD_KINDS,
    Account,
    AccountStatus,
    OneTimeTokenPurpose,
    StudyRecord,
)

# Column/attribute names for each one-time token kind: (hash, expiry)
ONE_TIME_TOKEN_FIELDS: Dict[OneTimeTokenPurpose, tuple[str, str]] = {
    OneTimeTokenPurpose.EMAIL_VERIFICATION: (
        "email_verification_token_hash",
        "email_verification_expires_at",
    ),
    OneTimeTokenPurpose.PASSWORD_RESET: ("reset_token_hash", "reset_token_expires_at"),
}


def token_fingerprint(raw: str) -> str:
    """One-way fingerprint stored in place of any raw bearer or one-time token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so comparisons never mix naive and aware values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def token_fields(purpose: OneTimeTokenPurpose) -> tuple[str, str]:
    try:
        return ONE_TIME_TOKEN_FIELDS[OneTimeTokenPurpose(purpose)]
    except (KeyError, ValueError):
        raise ValueError(f"unknown one-time token purpose: {purpose!r}") from None


def check_record_kind(kind: str) -> str:
    if kind not in STUDY_RECORD_KINDS:
        raise ConstraintViolation("unknown record kind", {"kind": kind})
    return kind


class CredentialStore(Protocol):
    def create_account(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_account_by_token(
        self, purpose: OneTimeTokenPurpose, token_hash: str
    ) -> Optional[Account]: ...

    def set_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None: ...

    def clear_one_time_token(
        self,
        account_id: str,
        purpose: OneTimeTokenPurpose,
        expected_hash: Optional[str] = None,
    ) -> bool: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def set_refresh_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def rotate_refresh_token(
        self,
        account_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool: ...

    def clear_refresh_token(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool: ...

    def revoke_sessions(self, account_id: str) -> Optional[int]: ...

    def update_password(
        self, account_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[Account]: ...

    def set_status(
        self, account_id: str, status: AccountStatus, *, revoke_sessions: bool
    ) -> Optional[Account]: ...

    def record_login(
        self, account_id: str, ip_addr: Optional[str], at: datetime
    ) -> None: ...

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Optional[Account]: ...

    def add_study_record(
        self, kind: str, account_id: str, payload: Optional[Dict[str, Any]] = None
    ) -> StudyRecord: ...

    def list_study_records(self, kind: str, account_id: str) -> List[StudyRecord]: ...

    def delete_study_records(self, kind: str, account_id: str) -> int: ...

    def delete_account(self, account_id: str) -> bool: ...
