from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from studybuddy.config import Settings
from studybuddy.logging import email_hash, get_logger
from studybuddy.service.account_status import AccountStatusMachine
from studybuddy.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from studybuddy.service.one_time_tokens import OneTimeTokenManager, OneTimeTokenPolicy
from studybuddy.service.passwords import PasswordHasher
from studybuddy.service.sessions import SessionRotationProtocol
from studybuddy.service.tokens import TokenIssuer, TokenPair
from studybuddy.storage.common import CredentialStore
from studybuddy.storage.errors import ConstraintViolation
from studybuddy.storage.models import Account, AccountStatus

logger = get_logger(__name__)

UNVERIFIED_LOGIN_MESSAGE = "Please verify your email before signing in"


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair
    reactivated: bool = False
    new_location: bool = False
    previous_ip: Optional[str] = None


class AuthService:
    """Account credential flows built on the session and one-time token primitives.

    Methods are synchronous and CPU-bound where passwords are involved; the
    HTTP layer runs them in a worker thread.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.issuer = issuer or TokenIssuer(settings)
        self.sessions = SessionRotationProtocol(store, self.issuer)
        self.status = AccountStatusMachine(store, self.sessions)
        self.verification = OneTimeTokenManager(
            store, OneTimeTokenPolicy.email_verification(settings)
        )
        self.reset = OneTimeTokenManager(store, OneTimeTokenPolicy.password_reset(settings))
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # registration and verification
    def register(
        self, email: str, password: str, *, name: Optional[str] = None
    ) -> Tuple[Account, str]:
        """Create an active, unverified account and its first verification token."""

        password_hash = self.hasher.hash(password)
        try:
            account = self.store.create_account(email, password_hash, name=name)
        except ConstraintViolation:
            self.logger.info("register_duplicate_email", email_hash=email_hash(email))
            raise ConflictError("Email already registered", detail={"field": "email"})
        raw = self.verification.issue(account)
        self.logger.info("account_registered", account_id=account.id)
        return account, raw

    def provision_account(
        self, email: str, password: str, *, name: Optional[str] = None
    ) -> Account:
        """Create an account that is verified from the start (operator use)."""

        account, raw = self.register(email, password, name=name)
        self.verification.redeem(raw)
        verified = self.store.mark_email_verified(account.id)
        return verified or account

    def request_email_verification(self, email: str) -> Optional[Tuple[Account, str]]:
        """Re-issue a verification token; ``None`` when nothing should be sent."""

        account = self.store.get_account_by_email(email)
        if not account or account.status == AccountStatus.DELETED or account.is_email_verified:
            self.logger.info(
                "verification_resend_skipped", email_hash=email_hash(email)
            )
            return None
        return account, self.verification.issue(account)

    def verify_email(self, raw_token: str) -> Account:
        account = self.verification.redeem(raw_token)
        verified = self.store.mark_email_verified(account.id)
        if not verified:
            raise NotFoundError("Invalid or expired verification link")
        self.logger.info("email_verified", account_id=account.id)
        return verified

    # login and sessions
    def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if not account or account.status == AccountStatus.DELETED:
            self.hasher.dummy_verify(password)
            self.logger.info("login_failed", email_hash=email_hash(email))
            raise InvalidCredentialsError()
        if not self.hasher.verify(password, account.password_hash):
            self.logger.info("login_failed", account_id=account.id)
            raise InvalidCredentialsError()
        if self.settings.require_email_verification and not account.is_email_verified:
            self.logger.info("login_unverified_email", account_id=account.id)
            raise ForbiddenError(UNVERIFIED_LOGIN_MESSAGE)

        reactivated = account.status == AccountStatus.DEACTIVATED
        account = self.status.reactivate_on_login(account)

        previous_ip = account.last_login_ip
        new_location = bool(previous_ip and ip_addr and previous_ip != ip_addr)
        now = self._now()
        self.store.record_login(account.id, ip_addr, now)
        account.last_login_at = now
        account.last_login_ip = ip_addr

        tokens = self.sessions.start(account)
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            reactivated=reactivated,
            new_location=new_location,
        )
        return LoginResult(
            account=account,
            tokens=tokens,
            reactivated=reactivated,
            new_location=new_location,
            previous_ip=previous_ip,
        )

    def refresh(self, refresh_token: Optional[str]) -> Tuple[Account, TokenPair]:
        return self.sessions.rotate(refresh_token)

    def logout(
        self,
        *,
        refresh_token: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> bool:
        """Clear the stored refresh fingerprint when the caller can be identified.

        Safe to call repeatedly and with no credentials at all.
        """

        identified = self.sessions.identify_refresh(refresh_token) if refresh_token else None
        if identified:
            account, fingerprint = identified
            return self.sessions.end(account.id, expected_hash=fingerprint)
        account = self.try_authenticate(authorization)
        if account:
            return self.sessions.end(account.id)
        return False

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> Account:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError()
        return self.sessions.authenticate_access(token)

    def try_authenticate(self, authorization: Optional[str]) -> Optional[Account]:
        try:
            return self.authenticate(authorization)
        except UnauthorizedError:
            return None

    # passwords
    def request_password_reset(self, email: str) -> Optional[Tuple[Account, str]]:
        account = self.store.get_account_by_email(email)
        if not account or account.status == AccountStatus.DELETED:
            self.logger.info("password_reset_skipped", email_hash=email_hash(email))
            return None
        raw = self.reset.issue(account)
        self.logger.info("password_reset_requested", account_id=account.id)
        return account, raw

    def _set_password(self, account_id: str, new_password: str) -> Account:
        updated = self.store.update_password(
            account_id, self.hasher.hash(new_password), self._now()
        )
        if not updated:
            raise NotFoundError("Account not found")
        return updated

    def reset_password(self, raw_token: str, new_password: str) -> Account:
        """Consume a reset token and set the new password; every session is revoked."""

        account = self.reset.redeem(raw_token)
        updated = self._set_password(account.id, new_password)
        self.logger.info(
            "password_reset_completed",
            account_id=account.id,
            token_version=updated.token_version,
        )
        return updated

    def change_password(
        self, account: Account, current_password: str, new_password: str
    ) -> Tuple[Account, TokenPair]:
        """Revoke all sessions, then start a fresh one for the caller."""

        if not self.hasher.verify(current_password, account.password_hash):
            raise ValidationFailedError(
                "Current password is incorrect", detail={"field": "current_password"}
            )
        if current_password == new_password:
            raise ValidationFailedError(
                "New password must be different from the current password",
                detail={"field": "new_password"},
            )
        updated = self._set_password(account.id, new_password)
        tokens = self.sessions.start(updated)
        self.logger.info(
            "password_changed",
            account_id=account.id,
            token_version=updated.token_version,
        )
        return updated, tokens

    # status
    def deactivate(self, account: Account) -> Account:
        return self.status.deactivate(account)

    def delete_account(self, account: Account, password: str) -> Dict[str, int]:
        if not self.hasher.verify(password, account.password_hash):
            raise ValidationFailedError("Incorrect password", detail={"field": "password"})
        return self.status.delete(account)

    # profile
    def update_profile(
        self,
        account: Account,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Account:
        updated = self.store.update_profile(
            account.id, name=name, avatar=avatar, preferences=preferences
        )
        if not updated:
            raise NotFoundError("Account not found")
        return updated
