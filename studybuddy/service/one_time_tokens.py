from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from studybuddy.config import Settings
from studybuddy.logging import get_logger
from studybuddy.service.errors import NotFoundError
from studybuddy.storage.common import CredentialStore, token_fields, token_fingerprint
from studybuddy.storage.models import Account, OneTimeTokenPurpose

logger = get_logger(__name__)

# 32 random bytes, hex encoded
TOKEN_BYTES = 32


@dataclass(frozen=True)
class OneTimeTokenPolicy:
    purpose: OneTimeTokenPurpose
    ttl: timedelta
    invalid_message: str

    @classmethod
    def email_verification(cls, settings: Settings) -> "OneTimeTokenPolicy":
        return cls(
            purpose=OneTimeTokenPurpose.EMAIL_VERIFICATION,
            ttl=timedelta(hours=settings.email_verification_ttl_hours),
            invalid_message="Invalid or expired verification link",
        )

    @classmethod
    def password_reset(cls, settings: Settings) -> "OneTimeTokenPolicy":
        return cls(
            purpose=OneTimeTokenPurpose.PASSWORD_RESET,
            ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            invalid_message="Invalid or expired reset link",
        )


class OneTimeTokenManager:
    """Single-use tokens for one purpose.

    Only ``sha256(raw)`` is persisted. Issuing overwrites any previous token of
    the same purpose, and ``redeem`` clears the stored hash with a conditional
    write so two concurrent redemptions cannot both succeed.
    """

    def __init__(self, store: CredentialStore, policy: OneTimeTokenPolicy) -> None:
        self.store = store
        self.policy = policy

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, account: Account) -> str:
        raw = secrets.token_hex(TOKEN_BYTES)
        expires_at = self._now() + self.policy.ttl
        self.store.set_one_time_token(
            account.id, self.policy.purpose, token_fingerprint(raw), expires_at
        )
        logger.info(
            "one_time_token_issued",
            purpose=self.policy.purpose.value,
            account_id=account.id,
            expires_at=expires_at.isoformat(),
        )
        return raw

    def verify(self, raw: str | None) -> Account:
        """Look up the account holding this token; the token stays stored."""

        if not raw:
            raise NotFoundError(self.policy.invalid_message)
        fingerprint = token_fingerprint(raw)
        account = self.store.find_account_by_token(self.policy.purpose, fingerprint)
        if not account:
            logger.warning("one_time_token_unknown", purpose=self.policy.purpose.value)
            raise NotFoundError(self.policy.invalid_message)
        _, expiry_field = token_fields(self.policy.purpose)
        expires_at = getattr(account, expiry_field)
        if expires_at is None or expires_at <= self._now():
            self.store.clear_one_time_token(
                account.id, self.policy.purpose, expected_hash=fingerprint
            )
            logger.warning(
                "one_time_token_expired",
                purpose=self.policy.purpose.value,
                account_id=account.id,
            )
            raise NotFoundError(self.policy.invalid_message)
        return account

    def redeem(self, raw: str | None) -> Account:
        """Verify and consume; the second of two racing redemptions gets NotFound."""

        account = self.verify(raw)
        consumed = self.store.clear_one_time_token(
            account.id, self.policy.purpose, expected_hash=token_fingerprint(raw)
        )
        if not consumed:
            logger.warning(
                "one_time_token_already_consumed",
                purpose=self.policy.purpose.value,
                account_id=account.id,
            )
            raise NotFoundError(self.policy.invalid_message)
        return account

