from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import NoReturn, Optional

from studybuddy.logging import get_logger
from studybuddy.service.errors import UnauthorizedError
from studybuddy.service.tokens import ACCESS, REFRESH, TokenClaims, TokenIssuer, TokenPair
from studybuddy.storage.common import CredentialStore, token_fingerprint
from studybuddy.storage.models import Account, AccountStatus

logger = get_logger(__name__)


class SessionRotationProtocol:
    """Login issuance, refresh rotation, logout and bulk revocation.

    No session state lives in the process: every check reads the account
    record. ``token_version`` is the only revocation primitive; bumping it
    invalidates every outstanding access and refresh token at once.
    """

    def __init__(self, store: CredentialStore, issuer: TokenIssuer) -> None:
        self.store = store
        self.issuer = issuer

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def start(self, account: Account) -> TokenPair:
        """Issue a pair and make its refresh token the single live one."""

        pair = self.issuer.issue_pair(account)
        self.store.set_refresh_token(
            account.id, token_fingerprint(pair.refresh_token), pair.refresh_expires_at
        )
        return pair

    def _check_account(self, claims: Optional[TokenClaims], reason_prefix: str) -> Account:
        if not claims:
            self._reject(f"{reason_prefix}_invalid")
        account = self.store.get_account(claims.account_id)
        if not account:
            self._reject(f"{reason_prefix}_account_missing", claims.account_id)
        if account.status != AccountStatus.ACTIVE:
            self._reject(f"{reason_prefix}_account_inactive", account.id)
        if claims.token_version != account.token_version:
            self._reject(f"{reason_prefix}_version_mismatch", account.id)
        # iat has second granularity; the version bump above is the exact guard
        if account.password_changed_at is not None and claims.issued_at < int(
            account.password_changed_at.timestamp()
        ):
            self._reject(f"{reason_prefix}_predates_password_change", account.id)
        return account

    def authenticate_access(self, token: Optional[str]) -> Account:
        claims = self.issuer.verify(token, ACCESS)
        return self._check_account(claims, "access_token")

    def _verify_refresh(self, token: Optional[str]) -> tuple[Account, str]:
        claims = self.issuer.verify(token, REFRESH)
        account = self._check_account(claims, "refresh_token")
        fingerprint = token_fingerprint(token)
        stored = account.refresh_token_hash
        if not stored or not hmac.compare_digest(stored, fingerprint):
            self._reject("refresh_token_not_current", account.id)
        expires_at = account.refresh_token_expires_at
        if expires_at is None or expires_at <= self._now():
            self._reject("refresh_token_stored_expired", account.id)
        return account, fingerprint

    def rotate(self, token: Optional[str]) -> tuple[Account, TokenPair]:
        """Exchange a refresh token for a new pair.

        The stored fingerprint is swapped only if it still matches the one
        presented, so of two concurrent rotations with the same token exactly
        one succeeds.
        """

        account, fingerprint = self._verify_refresh(token)
        pair = self.issuer.issue_pair(account)
        swapped = self.store.rotate_refresh_token(
            account.id,
            fingerprint,
            token_fingerprint(pair.refresh_token),
            pair.refresh_expires_at,
        )
        if not swapped:
            self._reject("refresh_token_rotation_lost", account.id)
        logger.info("refresh_token_rotated", account_id=account.id)
        return account, pair

    def identify_refresh(self, token: Optional[str]) -> Optional[tuple[Account, str]]:
        """Resolve a refresh token to its account without raising."""

        try:
            return self._verify_refresh(token)
        except UnauthorizedError:
            return None

    def end(self, account_id: str, expected_hash: Optional[str] = None) -> bool:
        cleared = self.store.clear_refresh_token(account_id, expected_hash=expected_hash)
        logger.info("session_ended", account_id=account_id, cleared=cleared)
        return cleared

    def revoke_all(self, account_id: str) -> Optional[int]:
        version = self.store.revoke_sessions(account_id)
        logger.info("sessions_revoked", account_id=account_id, token_version=version)
        return version

    @staticmethod
    def _reject(reason: str, account_id: Optional[str] = None) -> NoReturn:
        logger.info("token_rejected", reason=reason, account_id=account_id)
        raise UnauthorizedError()
