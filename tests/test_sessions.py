"""Unit tests for session start, refresh rotation, logout and revocation."""

from datetime import datetime, timedelta, timezone

import pytest

from studybuddy.config import Settings
from studybuddy.service.errors import UNAUTHORIZED_MESSAGE, UnauthorizedError
from studybuddy.service.sessions import SessionRotationProtocol
from studybuddy.service.tokens import TokenIssuer
from studybuddy.storage.common import token_fingerprint
from studybuddy.storage.memory import MemoryStore
from studybuddy.storage.models import AccountStatus


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="access-secret-for-session-tests-0123456789",
        jwt_refresh_secret="refresh-secret-for-session-tests-0123456789",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def sessions(store, settings):
    return SessionRotationProtocol(store, TokenIssuer(settings))


@pytest.fixture
def account(store):
    return store.create_account("a@x.com", "hash")


def _assert_unauthorized(call, *args):
    with pytest.raises(UnauthorizedError) as exc:
        call(*args)
    assert exc.value.message == UNAUTHORIZED_MESSAGE


class TestStart:
    def test_start_persists_refresh_fingerprint(self, sessions, store, account):
        pair = sessions.start(account)
        stored = store.get_account(account.id)

        assert stored.refresh_token_hash == token_fingerprint(pair.refresh_token)
        assert stored.refresh_token_expires_at == pair.refresh_expires_at

    def test_access_token_authenticates(self, sessions, account):
        pair = sessions.start(account)
        assert sessions.authenticate_access(pair.access_token).id == account.id

    def test_new_login_replaces_previous_refresh_chain(self, sessions, account):
        first = sessions.start(account)
        second = sessions.start(account)

        _assert_unauthorized(sessions.rotate, first.refresh_token)
        assert sessions.rotate(second.refresh_token)[0].id == account.id


class TestRotation:
    def test_rotation_is_single_use(self, sessions, account):
        original = sessions.start(account)
        _, rotated = sessions.rotate(original.refresh_token)

        assert rotated.refresh_token != original.refresh_token
        _assert_unauthorized(sessions.rotate, original.refresh_token)
        assert sessions.rotate(rotated.refresh_token)[0].id == account.id

    def test_first_concurrent_rotation_wins(self, sessions, store, account):
        pair = sessions.start(account)
        # both callers passed verification; the first swap lands
        _, fingerprint = sessions._verify_refresh(pair.refresh_token)
        sessions.rotate(pair.refresh_token)

        swapped = store.rotate_refresh_token(
            account.id, fingerprint, "late-writer", datetime.now(timezone.utc)
        )
        assert swapped is False
        assert store.get_account(account.id).refresh_token_hash != "late-writer"

    def test_lost_rotation_is_unauthorized(self, sessions, store, account, monkeypatch):
        pair = sessions.start(account)
        monkeypatch.setattr(store, "rotate_refresh_token", lambda *a, **kw: False)
        _assert_unauthorized(sessions.rotate, pair.refresh_token)

    def test_access_token_cannot_rotate(self, sessions, account):
        pair = sessions.start(account)
        _assert_unauthorized(sessions.rotate, pair.access_token)

    def test_stored_expiry_is_enforced(self, sessions, store, account):
        pair = sessions.start(account)
        store.set_refresh_token(
            account.id,
            token_fingerprint(pair.refresh_token),
            datetime.now(timezone.utc) - timedelta(seconds=1),
        )
        _assert_unauthorized(sessions.rotate, pair.refresh_token)

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed_refresh_rejected(self, sessions, token):
        _assert_unauthorized(sessions.rotate, token)


class TestRevocation:
    def test_revoke_all_invalidates_every_token(self, sessions, store, account):
        first = sessions.start(account)
        version = sessions.revoke_all(account.id)

        assert version == 1
        assert store.get_account(account.id).refresh_token_hash is None
        _assert_unauthorized(sessions.authenticate_access, first.access_token)
        _assert_unauthorized(sessions.rotate, first.refresh_token)

    def test_revoked_refresh_stays_dead_after_new_login(self, sessions, store, account):
        old = sessions.start(account)
        sessions.revoke_all(account.id)
        sessions.start(store.get_account(account.id))

        _assert_unauthorized(sessions.rotate, old.refresh_token)

    def test_inactive_account_rejected(self, sessions, store, account):
        pair = sessions.start(account)
        store.set_status(account.id, AccountStatus.DEACTIVATED, revoke_sessions=False)
        _assert_unauthorized(sessions.authenticate_access, pair.access_token)

    def test_missing_account_rejected(self, sessions, store, account):
        pair = sessions.start(account)
        store.delete_account(account.id)
        _assert_unauthorized(sessions.authenticate_access, pair.access_token)

    def test_token_issued_before_password_change_rejected(self, sessions, store, account):
        pair = sessions.start(account)
        # version unchanged so only the issue-time check can catch it
        store._mutate(
            account.id, password_changed_at=datetime.now(timezone.utc) + timedelta(seconds=5)
        )
        _assert_unauthorized(sessions.authenticate_access, pair.access_token)


class TestLogout:
    def test_end_clears_refresh_and_is_idempotent(self, sessions, store, account):
        pair = sessions.start(account)
        fingerprint = token_fingerprint(pair.refresh_token)

        assert sessions.end(account.id, expected_hash=fingerprint) is True
        assert sessions.end(account.id, expected_hash=fingerprint) is False
        assert store.get_account(account.id).refresh_token_hash is None
        _assert_unauthorized(sessions.rotate, pair.refresh_token)

    def test_stale_logout_does_not_end_newer_session(self, sessions, store, account):
        old = sessions.start(account)
        current = sessions.start(account)

        assert sessions.end(account.id, expected_hash=token_fingerprint(old.refresh_token)) is False
        assert sessions.rotate(current.refresh_token)[0].id == account.id

    def test_identify_refresh_never_raises(self, sessions, account):
        pair = sessions.start(account)

        assert sessions.identify_refresh("nope") is None
        identified_account, fingerprint = sessions.identify_refresh(pair.refresh_token)
        assert identified_account.id == account.id
        assert fingerprint == token_fingerprint(pair.refresh_token)
