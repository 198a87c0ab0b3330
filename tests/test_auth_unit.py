"""Unit tests for auth service.

Tests for:
- Registration and email verification
- Login, including deactivated and deleted accounts
- Refresh and logout
- Password reset and change
- Account deletion and profile updates
"""

import pytest

from studybuddy.config import Settings
from studybuddy.service.auth import UNVERIFIED_LOGIN_MESSAGE, AuthService
from studybuddy.service.errors import (
    INVALID_CREDENTIALS_MESSAGE,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from studybuddy.service.passwords import PasswordHasher
from studybuddy.storage.memory import MemoryStore
from studybuddy.storage.models import AccountStatus

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    hasher = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)
    return AuthService(memory_store, settings, hasher=hasher)


@pytest.fixture
def verified_account(auth_service):
    account, raw = auth_service.register("a@x.com", PASSWORD, name="Sam")
    return auth_service.verify_email(raw)


def _bearer(token: str) -> str:
    return f"Bearer {token}"


class TestRegistration:
    def test_register_creates_unverified_active_account(self, auth_service):
        account, raw = auth_service.register("  A@X.com ", PASSWORD)

        assert account.email == "a@x.com"
        assert account.status == AccountStatus.ACTIVE
        assert account.is_email_verified is False
        assert account.token_version == 0
        assert account.password_hash != PASSWORD
        assert len(raw) == 64

    def test_duplicate_email_conflicts(self, auth_service):
        auth_service.register("a@x.com", PASSWORD)
        with pytest.raises(ConflictError) as exc:
            auth_service.register("A@x.com", PASSWORD)
        assert exc.value.detail == {"field": "email"}

    def test_verify_email_is_single_use(self, auth_service):
        _, raw = auth_service.register("a@x.com", PASSWORD)
        assert auth_service.verify_email(raw).is_email_verified is True

        with pytest.raises(NotFoundError):
            auth_service.verify_email(raw)

    def test_resend_verification_skips_verified_and_unknown(
        self, auth_service, verified_account
    ):
        assert auth_service.request_email_verification("a@x.com") is None
        assert auth_service.request_email_verification("nobody@x.com") is None

    def test_resend_verification_replaces_old_link(self, auth_service):
        _, first = auth_service.register("a@x.com", PASSWORD)
        _, second = auth_service.request_email_verification("a@x.com")

        with pytest.raises(NotFoundError):
            auth_service.verify_email(first)
        assert auth_service.verify_email(second).is_email_verified is True

    def test_provision_account_is_verified(self, auth_service):
        account = auth_service.provision_account("ops@x.com", PASSWORD)
        assert account.is_email_verified is True
        assert account.email_verification_token_hash is None


class TestLogin:
    def test_login_returns_pair_and_records_login(self, auth_service, verified_account, memory_store):
        result = auth_service.login("a@x.com", PASSWORD, ip_addr="10.0.0.1")

        assert result.account.id == verified_account.id
        assert result.reactivated is False
        assert result.new_location is False
        stored = memory_store.get_account(verified_account.id)
        assert stored.last_login_ip == "10.0.0.1"
        assert stored.last_login_at is not None
        assert auth_service.authenticate(_bearer(result.tokens.access_token)).id == stored.id

    def test_unknown_email_and_wrong_password_look_the_same(self, auth_service, verified_account):
        with pytest.raises(InvalidCredentialsError) as unknown:
            auth_service.login("nobody@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            auth_service.login("a@x.com", "Wr0ng!Pass")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS_MESSAGE

    def test_unverified_login_forbidden(self, auth_service):
        auth_service.register("a@x.com", PASSWORD)
        with pytest.raises(ForbiddenError) as exc:
            auth_service.login("a@x.com", PASSWORD)
        assert exc.value.message == UNVERIFIED_LOGIN_MESSAGE

    def test_unverified_login_allowed_when_not_required(self, memory_store, settings):
        service = AuthService(
            memory_store,
            settings.model_copy(update={"require_email_verification": False}),
            hasher=PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1),
        )
        service.register("a@x.com", PASSWORD)
        assert service.login("a@x.com", PASSWORD).account.email == "a@x.com"

    def test_wrong_password_checked_before_verification(self, auth_service):
        auth_service.register("a@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("a@x.com", "Wr0ng!Pass")

    def test_login_reactivates_deactivated_account(self, auth_service, verified_account):
        auth_service.deactivate(verified_account)
        result = auth_service.login("a@x.com", PASSWORD)

        assert result.reactivated is True
        assert result.account.status == AccountStatus.ACTIVE
        assert auth_service.authenticate(_bearer(result.tokens.access_token)).id == verified_account.id

    def test_deleted_account_looks_unknown(self, auth_service, verified_account, memory_store):
        memory_store.set_status(verified_account.id, AccountStatus.DELETED, revoke_sessions=True)
        with pytest.raises(InvalidCredentialsError) as exc:
            auth_service.login("a@x.com", PASSWORD)
        assert exc.value.message == INVALID_CREDENTIALS_MESSAGE

    def test_unknown_email_still_runs_a_hash_check(self, auth_service, monkeypatch):
        calls = []
        monkeypatch.setattr(auth_service.hasher, "dummy_verify", lambda pw: calls.append(pw))
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("nobody@x.com", PASSWORD)
        assert calls == [PASSWORD]

    def test_new_location_flagged_on_ip_change(self, auth_service, verified_account):
        auth_service.login("a@x.com", PASSWORD, ip_addr="10.0.0.1")
        same = auth_service.login("a@x.com", PASSWORD, ip_addr="10.0.0.1")
        moved = auth_service.login("a@x.com", PASSWORD, ip_addr="192.168.1.9")

        assert same.new_location is False
        assert moved.new_location is True
        assert moved.previous_ip == "10.0.0.1"


class TestAuthenticate:
    @pytest.mark.parametrize(
        "header", [None, "", "Bearer", "Bearer ", "Basic abc", "Token xyz", "Bearer nonsense"]
    )
    def test_bad_headers_unauthorized(self, auth_service, header):
        with pytest.raises(UnauthorizedError):
            auth_service.authenticate(header)
        assert auth_service.try_authenticate(header) is None

    def test_refresh_token_is_not_an_access_token(self, auth_service, verified_account):
        tokens = auth_service.login("a@x.com", PASSWORD).tokens
        assert auth_service.try_authenticate(_bearer(tokens.refresh_token)) is None


class TestRefreshAndLogout:
    def test_refresh_rotates(self, auth_service, verified_account):
        tokens = auth_service.login("a@x.com", PASSWORD).tokens
        _, rotated = auth_service.refresh(tokens.refresh_token)

        with pytest.raises(UnauthorizedError):
            auth_service.refresh(tokens.refresh_token)
        assert auth_service.refresh(rotated.refresh_token)[0].id == verified_account.id

    def test_logout_by_refresh_token(self, auth_service, verified_account, memory_store):
        tokens = auth_service.login("a@x.com", PASSWORD).tokens

        assert auth_service.logout(refresh_token=tokens.refresh_token) is True
        assert memory_store.get_account(verified_account.id).refresh_token_hash is None
        with pytest.raises(UnauthorizedError):
            auth_service.refresh(tokens.refresh_token)

    def test_logout_by_access_token(self, auth_service, verified_account, memory_store):
        tokens = auth_service.login("a@x.com", PASSWORD).tokens

        assert auth_service.logout(authorization=_bearer(tokens.access_token)) is True
        assert memory_store.get_account(verified_account.id).refresh_token_hash is None

    def test_logout_without_credentials_is_harmless(self, auth_service):
        assert auth_service.logout() is False
        assert auth_service.logout(refresh_token="junk", authorization="Bearer junk") is False


class TestPasswordReset:
    def test_reset_password_revokes_everything(self, auth_service, verified_account):
        tokens = auth_service.login("a@x.com", PASSWORD).tokens
        _, raw = auth_service.request_password_reset("a@x.com")

        updated = auth_service.reset_password(raw, "N3w!Password")

        assert updated.token_version == verified_account.token_version + 1
        assert updated.password_changed_at is not None
        assert updated.reset_token_hash is None
        assert auth_service.try_authenticate(_bearer(tokens.access_token)) is None
        with pytest.raises(UnauthorizedError):
            auth_service.refresh(tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("a@x.com", PASSWORD)
        assert auth_service.login("a@x.com", "N3w!Password").account.id == verified_account.id

    def test_reset_token_single_use(self, auth_service, verified_account):
        _, raw = auth_service.request_password_reset("a@x.com")
        auth_service.reset_password(raw, "N3w!Password")

        with pytest.raises(NotFoundError):
            auth_service.reset_password(raw, "An0ther!Password")

    def test_reset_request_for_unknown_email_is_silent(self, auth_service):
        assert auth_service.request_password_reset("nobody@x.com") is None

    def test_reset_request_for_deleted_account_is_silent(
        self, auth_service, verified_account, memory_store
    ):
        memory_store.set_status(verified_account.id, AccountStatus.DELETED, revoke_sessions=True)
        assert auth_service.request_password_reset("a@x.com") is None


class TestChangePassword:
    def test_change_password_starts_fresh_session(self, auth_service, verified_account):
        old = auth_service.login("a@x.com", PASSWORD).tokens
        account = auth_service.authenticate(_bearer(old.access_token))

        updated, fresh = auth_service.change_password(account, PASSWORD, "N3w!Password")

        assert auth_service.try_authenticate(_bearer(old.access_token)) is None
        with pytest.raises(UnauthorizedError):
            auth_service.refresh(old.refresh_token)
        assert auth_service.authenticate(_bearer(fresh.access_token)).id == updated.id
        assert auth_service.refresh(fresh.refresh_token)[0].id == updated.id

    def test_wrong_current_password(self, auth_service, verified_account):
        with pytest.raises(ValidationFailedError) as exc:
            auth_service.change_password(verified_account, "Wr0ng!Pass", "N3w!Password")
        assert exc.value.detail == {"field": "current_password"}

    def test_new_password_must_differ(self, auth_service, verified_account):
        with pytest.raises(ValidationFailedError):
            auth_service.change_password(verified_account, PASSWORD, PASSWORD)


class TestDeleteAndProfile:
    def test_delete_requires_password(self, auth_service, verified_account, memory_store):
        with pytest.raises(ValidationFailedError):
            auth_service.delete_account(verified_account, "Wr0ng!Pass")
        assert memory_store.get_account(verified_account.id) is not None

    def test_delete_removes_account_and_records(self, auth_service, verified_account, memory_store):
        memory_store.add_study_record("subjects", verified_account.id, {"title": "Math"})
        removed = auth_service.delete_account(verified_account, PASSWORD)

        assert removed["subjects"] == 1
        assert memory_store.get_account(verified_account.id) is None
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("a@x.com", PASSWORD)

    def test_email_is_reusable_after_delete(self, auth_service, verified_account):
        auth_service.delete_account(verified_account, PASSWORD)
        account, _ = auth_service.register("a@x.com", PASSWORD)
        assert account.id != verified_account.id

    def test_update_profile_merges_preferences(self, auth_service, verified_account):
        auth_service.update_profile(verified_account, preferences={"theme": "dark"})
        updated = auth_service.update_profile(
            verified_account, name="Alex", preferences={"default_timer_duration": 50}
        )

        assert updated.name == "Alex"
        assert updated.preferences == {"theme": "dark", "default_timer_duration": 50}

    def test_update_profile_avatar_survives_other_updates(self, auth_service, verified_account):
        auth_service.update_profile(verified_account, avatar="https://cdn.example/a.png")
        updated = auth_service.update_profile(verified_account, name="Alex")

        assert updated.avatar == "https://cdn.example/a.png"
        assert updated.public_view()["avatar"] == "https://cdn.example/a.png"
