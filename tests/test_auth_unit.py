"""Unit tests for the authentication service.

Tests for:
- Registration and duplicate logins
- Login with indistinguishable failure modes
- Access token verification
- Refresh session rotation and logout
- Profile get/set
- Storage failures surfacing as service errors
"""

from datetime import timedelta

import pytest

from gatekey.service.auth import AuthService
from gatekey.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from gatekey.service.refresh import RefreshTokenLifecycle
from gatekey.service.tokens import TokenSigner
from gatekey.storage.errors import StorageUnavailable
from gatekey.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    store = MemoryStore(str(tmp_path / "store"))
    yield store
    store.close()


@pytest.fixture
def auth_service(memory_store, fast_hasher):
    signer = TokenSigner("Test-Secret-Key_for-Automation-Only-987654321!")
    refresh = RefreshTokenLifecycle(memory_store, ttl=timedelta(hours=1))
    return AuthService(memory_store, fast_hasher, signer, refresh)


class TestRegister:
    def test_register_returns_subject_id(self, auth_service, memory_store):
        user_id = auth_service.register("alice", "pw123")
        assert memory_store.get_user_by_login("alice").user_id == user_id

    def test_password_is_stored_hashed(self, auth_service, memory_store):
        auth_service.register("alice", "pw123")
        stored = memory_store.get_user_by_login("alice").password_hash
        assert stored != "pw123"
        assert stored.startswith("$argon2id$")

    def test_duplicate_login_conflicts_without_partial_state(self, auth_service, memory_store):
        first = auth_service.register("alice", "pw123", email="a@example.com")

        with pytest.raises(ConflictError):
            auth_service.register("alice", "other", email="b@example.com")

        assert memory_store.get_user_by_login("alice").user_id == first
        assert len(memory_store.users) == 1
        assert len(memory_store.profiles) == 1
        assert auth_service.get_profile(first) == "a@example.com"

    def test_register_with_email_sets_profile(self, auth_service):
        user_id = auth_service.register("alice", "pw123", email="a@example.com")
        assert auth_service.get_profile(user_id) == "a@example.com"

    @pytest.mark.parametrize("login,password", [("", "pw"), ("alice", "")])
    def test_blank_credentials_rejected(self, auth_service, login, password):
        with pytest.raises(ValidationError):
            auth_service.register(login, password)


class TestLogin:
    def test_register_then_login_round_trip(self, auth_service):
        user_id = auth_service.register("alice", "pw123")

        pair = auth_service.login("alice", "pw123")

        assert pair.user_id == user_id
        assert pair.token_type == "bearer"
        assert auth_service.verify_access_token(pair.access_token) == user_id

    def test_wrong_password_and_unknown_login_are_indistinguishable(self, auth_service):
        auth_service.register("alice", "pw123")

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            auth_service.login("alice", "wrong")
        with pytest.raises(InvalidCredentialsError) as unknown_login:
            auth_service.login("mallory", "pw123")

        assert type(wrong_password.value) is type(unknown_login.value)
        assert wrong_password.value.message == unknown_login.value.message
        assert wrong_password.value.status_code == unknown_login.value.status_code == 401

    def test_unknown_login_still_runs_password_verification(self, memory_store, fast_hasher):
        calls = []

        class RecordingHasher:
            def hash(self, password):
                return fast_hasher.hash(password)

            def verify(self, password, password_hash):
                calls.append(password)
                return fast_hasher.verify(password, password_hash)

        service = AuthService(
            memory_store,
            RecordingHasher(),
            TokenSigner("unit-test-signing-secret-0123456789"),
            RefreshTokenLifecycle(memory_store),
        )
        with pytest.raises(InvalidCredentialsError):
            service.authenticate("nobody", "guess")
        assert calls == ["guess"]

    def test_authenticate_does_not_mutate_storage(self, auth_service, memory_store):
        auth_service.register("alice", "pw123")
        auth_service.authenticate("alice", "pw123")
        assert memory_store.refresh_tokens == {}

    def test_each_login_issues_distinct_refresh_tokens(self, auth_service):
        auth_service.register("alice", "pw123")
        first = auth_service.login("alice", "pw123")
        second = auth_service.login("alice", "pw123")
        assert first.refresh_token != second.refresh_token


class TestVerifyAccessToken:
    def test_garbage_token_is_invalid(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.verify_access_token("not-a-token")

    def test_refresh_token_is_not_an_access_token(self, auth_service):
        auth_service.register("alice", "pw123")
        pair = auth_service.login("alice", "pw123")
        with pytest.raises(InvalidTokenError):
            auth_service.verify_access_token(pair.refresh_token)


class TestRefreshSession:
    def test_concrete_rotation_scenario(self, auth_service):
        subject = auth_service.register("u1", "pw123")
        first = auth_service.login("u1", "pw123")
        assert auth_service.verify_access_token(first.access_token) == subject

        second = auth_service.refresh_session(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert auth_service.verify_access_token(second.access_token) == subject

        with pytest.raises(InvalidTokenError):
            auth_service.refresh_session(first.refresh_token)

        third = auth_service.refresh_session(second.refresh_token)
        assert third.user_id == subject

    def test_expired_refresh_token_is_invalid(self, memory_store, fast_hasher):
        refresh = RefreshTokenLifecycle(memory_store, ttl=timedelta(seconds=-1))
        service = AuthService(
            memory_store,
            fast_hasher,
            TokenSigner("unit-test-signing-secret-0123456789"),
            refresh,
        )
        service.register("alice", "pw123")
        pair = service.login("alice", "pw123")
        with pytest.raises(InvalidTokenError):
            service.refresh_session(pair.refresh_token)

    def test_logout_then_refresh_is_invalid(self, auth_service):
        auth_service.register("alice", "pw123")
        pair = auth_service.login("alice", "pw123")

        auth_service.logout(pair.refresh_token)

        with pytest.raises(InvalidTokenError):
            auth_service.refresh_session(pair.refresh_token)

    def test_logout_with_unknown_token_succeeds(self, auth_service):
        auth_service.logout("never-issued")
        auth_service.logout("")

    def test_access_token_survives_logout(self, auth_service):
        """Access tokens are stateless; logout only affects refresh tokens."""
        user_id = auth_service.register("alice", "pw123")
        pair = auth_service.login("alice", "pw123")
        auth_service.logout(pair.refresh_token)
        assert auth_service.verify_access_token(pair.access_token) == user_id


class TestProfiles:
    def test_get_missing_profile_is_not_found(self, auth_service):
        user_id = auth_service.register("alice", "pw123")
        with pytest.raises(NotFoundError):
            auth_service.get_profile(user_id)

    def test_set_then_get_round_trips(self, auth_service):
        user_id = auth_service.register("alice", "pw123")
        auth_service.set_profile(user_id, "a@example.com")
        assert auth_service.get_profile(user_id) == "a@example.com"

    def test_second_set_overwrites(self, auth_service, memory_store):
        user_id = auth_service.register("alice", "pw123")
        auth_service.set_profile(user_id, "a@example.com")
        auth_service.set_profile(user_id, "b@example.com")
        assert auth_service.get_profile(user_id) == "b@example.com"
        assert len(memory_store.profiles) == 1


class TestStorageFailures:
    def test_closed_store_surfaces_storage_unavailable(self, auth_service, memory_store):
        memory_store.close()
        with pytest.raises(StorageUnavailableError) as exc_info:
            auth_service.register("alice", "pw123")
        assert exc_info.value.status_code == 503
        assert "users log" not in exc_info.value.message

    def test_ping_maps_storage_errors(self, auth_service, memory_store):
        auth_service.ping()
        memory_store.close()
        with pytest.raises(StorageUnavailableError):
            auth_service.ping()

    def test_unavailable_lookup_is_not_reported_as_bad_credentials(self, memory_store, fast_hasher):
        class DownStore:
            def get_user_by_login(self, login):
                raise StorageUnavailable("database unavailable")

        service = AuthService(
            DownStore(),
            fast_hasher,
            TokenSigner("unit-test-signing-secret-0123456789"),
            RefreshTokenLifecycle(memory_store),
        )
        with pytest.raises(StorageUnavailableError):
            service.login("alice", "pw123")

    def test_sweep_never_raises(self, memory_store, fast_hasher):
        class DownStore:
            def delete_expired_refresh_tokens(self, now=None):
                raise StorageUnavailable("database unavailable")

        store = DownStore()
        service = AuthService(
            store,
            fast_hasher,
            TokenSigner("unit-test-signing-secret-0123456789"),
            RefreshTokenLifecycle(store),
        )
        assert service.sweep_expired_refresh_tokens() == 0
