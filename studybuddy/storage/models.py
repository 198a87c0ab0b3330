from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


class OneTimeTokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


# Account-owned record collections removed when an account is deleted.
# Children are listed before the subjects they hang off.
STUDY_RECORD_KINDS = ("flashcards", "notes", "study_sessions", "subjects")


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    avatar: str = ""
    is_email_verified: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    token_version: int = 0
    refresh_token_hash: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    preferences: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str, *, name: Optional[str] = None) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
        )

    def public_view(self) -> Dict[str, Any]:
        """Outward representation: no hashes, token state, login IP or deactivation time."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "avatar": self.avatar,
            "is_email_verified": self.is_email_verified,
            "status": self.status.value,
            "preferences": dict(self.preferences or {}),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class StudyRecord:
    """Opaque account-owned record (subject, note, flashcard or study session)."""

    id: str
    account_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
