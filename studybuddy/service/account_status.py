from __future__ import annotations

from typing import Dict, FrozenSet

from studybuddy.logging import get_logger
from studybuddy.service.errors import ConflictError, NotFoundError, ServerError
from studybuddy.service.sessions import SessionRotationProtocol
from studybuddy.storage.common import CredentialStore
from studybuddy.storage.models import STUDY_RECORD_KINDS, Account, AccountStatus

logger = get_logger(__name__)

# Deleted has no outgoing edges.
ALLOWED_TRANSITIONS: Dict[AccountStatus, FrozenSet[AccountStatus]] = {
    AccountStatus.ACTIVE: frozenset({AccountStatus.DEACTIVATED, AccountStatus.DELETED}),
    AccountStatus.DEACTIVATED: frozenset({AccountStatus.ACTIVE, AccountStatus.DELETED}),
    AccountStatus.DELETED: frozenset(),
}


class AccountStatusMachine:
    """Active / deactivated / deleted transitions and their session effects."""

    def __init__(self, store: CredentialStore, sessions: SessionRotationProtocol) -> None:
        self.store = store
        self.sessions = sessions

    @staticmethod
    def can_transition(current: AccountStatus, target: AccountStatus) -> bool:
        return AccountStatus(target) in ALLOWED_TRANSITIONS[AccountStatus(current)]

    def _transition(
        self, account: Account, target: AccountStatus, *, revoke_sessions: bool
    ) -> Account:
        if not self.can_transition(account.status, target):
            raise ConflictError(
                f"Cannot move account from {account.status.value} to {target.value}",
                detail={"status": account.status.value},
            )
        updated = self.store.set_status(account.id, target, revoke_sessions=revoke_sessions)
        if not updated:
            raise NotFoundError("Account not found")
        logger.info(
            "account_status_changed",
            account_id=account.id,
            previous=account.status.value,
            status=target.value,
            sessions_revoked=revoke_sessions,
        )
        return updated

    def deactivate(self, account: Account) -> Account:
        return self._transition(account, AccountStatus.DEACTIVATED, revoke_sessions=True)

    def reactivate_on_login(self, account: Account) -> Account:
        """Deactivated accounts come back on the next successful login."""

        if account.status != AccountStatus.DEACTIVATED:
            return account
        return self._transition(account, AccountStatus.ACTIVE, revoke_sessions=False)

    def delete(self, account: Account) -> Dict[str, int]:
        """Revoke, remove every owned record, then hard-delete the account.

        The status is set to deleted first so a failure part-way through leaves
        an account that can no longer authenticate.
        """

        self._transition(account, AccountStatus.DELETED, revoke_sessions=True)
        removed: Dict[str, int] = {}
        try:
            for kind in STUDY_RECORD_KINDS:
                removed[kind] = self.store.delete_study_records(kind, account.id)
            self.store.delete_account(account.id)
        except Exception as exc:
            logger.error(
                "account_delete_incomplete",
                account_id=account.id,
                removed=removed,
                error=str(exc),
            )
            raise ServerError("Account deletion did not complete") from exc
        logger.info("account_deleted", account_id=account.id, removed=removed)
        return removed
