"""
Tests for authentication flows.

Tests cover:
- Email login success/failure and the security events they emit
- Rate limiting of login attempts per email
- Registration, Google sign-in, logout, password change, verification resend
- Error code to message mapping
- Session token creation, decoding and tampering
"""

import asyncio
import threading
from datetime import datetime, timezone

import pytest

from app import identity as identity_module
from app.auth import AuthService, RateLimitExceeded, create_session_token, decode_session_token
from app.config import Settings
from app.db import MemoryDocumentStore
from app.identity import AuthError, InMemoryIdentityProvider, get_auth_error_message
from app.models import ProviderInfo, UserInfo, UserMetadata
from app.rate_limit import RateLimiter
from app.security import SECURITY_LOG_COLLECTION, SecurityEventLogger


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _fixed_ip() -> str:
    return "203.0.113.7"


@pytest.fixture()
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture()
def identity() -> InMemoryIdentityProvider:
    return InMemoryIdentityProvider()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def service(identity, store, clock) -> AuthService:
    events = SecurityEventLogger(
        store,
        Settings(app_env="production"),
        ip_resolver=_fixed_ip,
    )
    limiter = RateLimiter(max_attempts=3, time_window=900, clock=clock)
    return AuthService(identity=identity, limiter=limiter, events=events)


def run(service: AuthService, coro):
    """Run a flow and wait for the security events it scheduled."""

    async def scenario():
        try:
            return await coro
        finally:
            await service.events.drain()

    return asyncio.run(scenario())


def event_types(store: MemoryDocumentStore) -> list[str]:
    return [doc["event_type"] for doc in store.query(SECURITY_LOG_COLLECTION)]


@pytest.fixture()
def registered(service: AuthService, store: MemoryDocumentStore) -> UserInfo:
    user = run(service, service.register_with_email("Alice@Example.com", "secret123", "Alice"))
    for doc in store.query(SECURITY_LOG_COLLECTION):
        store.delete(SECURITY_LOG_COLLECTION, doc["id"])
    return user


class TestLoginWithEmail:
    def test_success(self, service, registered, store):
        user = run(service, service.login_with_email("alice@example.com", "secret123"))
        assert user.uid == registered.uid
        assert event_types(store) == ["login_success"]
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["details"] == {"method": "email_password"}
        assert doc["severity"] == "low"

    def test_email_normalized(self, service, registered):
        user = run(service, service.login_with_email("  ALICE@example.com ", "secret123"))
        assert user.email == "alice@example.com"

    def test_wrong_password(self, service, registered, store):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.login_with_email("alice@example.com", "nope"))

        assert exc_info.value.code == "auth/wrong-password"
        assert exc_info.value.message == "Wrong password"
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["event_type"] == "login_failure"
        assert doc["severity"] == "high"
        assert doc["details"]["email"] == "alice@example.com"
        assert doc["details"]["error"] == "auth/wrong-password"

    def test_unknown_user(self, service):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.login_with_email("ghost@example.com", "whatever"))
        assert exc_info.value.code == "auth/user-not-found"

    def test_disabled_user(self, service, identity, registered):
        identity.disable_user(registered.uid)
        with pytest.raises(AuthError) as exc_info:
            run(service, service.login_with_email("alice@example.com", "secret123"))
        assert exc_info.value.code == "auth/user-disabled"

    def test_client_context_recorded(self, service, registered, store):
        run(
            service,
            service.login_with_email(
                "alice@example.com",
                "secret123",
                {"ip_address": "198.51.100.9", "user_agent": "pytest"},
            ),
        )
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["ip_address"] == "198.51.100.9"
        assert doc["user_agent"] == "pytest"


class TestLoginRateLimit:
    def test_fourth_attempt_denied(self, service, registered, store):
        for _ in range(3):
            with pytest.raises(AuthError):
                run(service, service.login_with_email("alice@example.com", "bad"))

        with pytest.raises(RateLimitExceeded) as exc_info:
            run(service, service.login_with_email("alice@example.com", "secret123"))

        assert exc_info.value.remaining_minutes == 15
        assert "15 minutes" in exc_info.value.message
        assert event_types(store)[-1] == "rate_limit_exceeded"
        last = store.query(SECURITY_LOG_COLLECTION)[-1]
        assert last["details"] == {"email": "alice@example.com", "remaining_time": 15}

    def test_successful_logins_count_too(self, service, registered):
        for _ in range(3):
            run(service, service.login_with_email("alice@example.com", "secret123"))
        with pytest.raises(RateLimitExceeded):
            run(service, service.login_with_email("alice@example.com", "secret123"))

    def test_keyed_by_normalized_email(self, service, registered):
        for email in ("alice@example.com", "ALICE@example.com", " alice@example.com"):
            run(service, service.login_with_email(email, "secret123"))
        with pytest.raises(RateLimitExceeded):
            run(service, service.login_with_email("Alice@Example.com", "secret123"))

    def test_allowed_after_window(self, service, registered, clock):
        for _ in range(3):
            run(service, service.login_with_email("alice@example.com", "secret123"))
        clock.now += 901
        user = run(service, service.login_with_email("alice@example.com", "secret123"))
        assert user.uid == registered.uid

    def test_remaining_minutes_rounded_up(self, service, registered, clock):
        for _ in range(3):
            run(service, service.login_with_email("alice@example.com", "secret123"))
        clock.now += 61
        with pytest.raises(RateLimitExceeded) as exc_info:
            run(service, service.login_with_email("alice@example.com", "secret123"))
        assert exc_info.value.remaining_minutes == 14


class TestRegistration:
    def test_register_sets_profile_and_sends_verification(self, service, identity, store):
        user = run(service, service.register_with_email("bob@example.com", "secret123", "Bob"))

        assert user.display_name == "Bob"
        assert user.email == "bob@example.com"
        assert not user.email_verified
        assert identity.verification_emails_sent(user.uid) == 1
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["event_type"] == "user_registered"
        assert doc["details"] == {"email": "bob@example.com", "has_display_name": True}

    def test_duplicate_email(self, service, registered, store):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.register_with_email("alice@example.com", "secret123"))
        assert exc_info.value.code == "auth/email-already-in-use"
        assert event_types(store) == ["registration_failed"]

    def test_weak_password(self, service):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.register_with_email("carol@example.com", "abc"))
        assert exc_info.value.code == "auth/weak-password"


class TestGoogleLogin:
    def test_success_creates_account(self, service, identity, store):
        identity.register_google_identity("google-token", "dana@example.com", "Dana")
        user = run(service, service.login_with_google("google-token"))

        assert user.email == "dana@example.com"
        assert user.email_verified
        assert [p.provider_id for p in user.provider_data] == ["google.com"]
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["details"] == {"method": "google_oauth"}

    def test_links_existing_password_account(self, service, identity, registered):
        identity.register_google_identity("google-token", "alice@example.com", "Alice")
        user = run(service, service.login_with_google("google-token"))
        assert user.uid == registered.uid
        assert {p.provider_id for p in user.provider_data} == {"password", "google.com"}

    def test_unknown_credential(self, service, store):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.login_with_google("forged"))
        assert exc_info.value.message == "Something went wrong, please try again"
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["event_type"] == "login_failure"
        assert doc["details"]["method"] == "google_oauth"


class TestAccountActions:
    def test_logout_records_event(self, service, registered, store):
        run(service, service.logout(registered))
        assert event_types(store) == ["user_logout"]

    def test_logout_without_user_is_noop(self, service, store):
        run(service, service.logout(None))
        assert event_types(store) == []

    def test_change_password(self, service, registered, store):
        run(service, service.change_password(registered, "secret123", "newsecret456"))
        assert event_types(store) == ["password_changed"]
        # Emitted type is not in the medium table
        assert store.query(SECURITY_LOG_COLLECTION)[0]["severity"] == "low"

        user = run(service, service.login_with_email("alice@example.com", "newsecret456"))
        assert user.uid == registered.uid

    def test_change_password_wrong_current(self, service, registered, store):
        with pytest.raises(AuthError) as exc_info:
            run(service, service.change_password(registered, "wrong", "newsecret456"))
        assert exc_info.value.code == "auth/wrong-password"
        assert event_types(store) == ["password_change_failed"]

    def test_resend_verification(self, service, identity, registered, store):
        run(service, service.resend_email_verification(registered))
        assert identity.verification_emails_sent(registered.uid) == 2
        (doc,) = store.query(SECURITY_LOG_COLLECTION)
        assert doc["event_type"] == "email_verification_resent"
        assert doc["severity"] == "medium"


class TestPasswordHashing:
    """Test that password hashing runs in worker threads, not on the event loop."""

    @pytest.fixture()
    def hash_threads(self, monkeypatch) -> list[threading.Thread]:
        threads: list[threading.Thread] = []
        original_hash = identity_module._hash_password

        def tracking_hash(*args, **kwargs):
            threads.append(threading.current_thread())
            return original_hash(*args, **kwargs)

        monkeypatch.setattr(identity_module, "_hash_password", tracking_hash)
        return threads

    def test_flows_hash_off_the_loop(self, identity, hash_threads):
        async def scenario():
            user = await identity.create_user("bob@example.com", "secret123")
            await identity.sign_in_with_password("bob@example.com", "secret123")
            with pytest.raises(AuthError):
                await identity.sign_in_with_password("bob@example.com", "wrong")
            await identity.reauthenticate(user.uid, "secret123")
            await identity.update_password(user.uid, "newsecret456")
            await identity.sign_in_with_password("bob@example.com", "newsecret456")

        asyncio.run(scenario())

        assert len(hash_threads) == 6
        assert all(t is not threading.main_thread() for t in hash_threads)

    def test_loop_keeps_ticking_during_sign_in(self, identity):
        async def scenario():
            await identity.create_user("bob@example.com", "secret123")
            ticks = 0
            done = asyncio.Event()

            async def ticker():
                nonlocal ticks
                while not done.is_set():
                    ticks += 1
                    await asyncio.sleep(0)

            task = asyncio.create_task(ticker())
            for _ in range(3):
                with pytest.raises(AuthError):
                    await identity.sign_in_with_password("bob@example.com", "wrong")
            done.set()
            await task
            return ticks

        assert asyncio.run(scenario()) > 3


class TestErrorMessages:
    def test_known_code(self):
        assert get_auth_error_message("auth/popup-blocked") == "Login popup was blocked by the browser"

    def test_unknown_code_falls_back(self):
        assert get_auth_error_message("auth/something-new") == "Something went wrong, please try again"

    def test_none_code_falls_back(self):
        assert get_auth_error_message(None) == "Something went wrong, please try again"


def _session_user() -> UserInfo:
    return UserInfo(
        uid="u-1",
        email="test@example.com",
        display_name="Test User",
        email_verified=True,
        provider_data=[ProviderInfo(provider_id="password", uid="test@example.com")],
        metadata=UserMetadata(
            creation_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
            last_sign_in_time=datetime(2026, 10, 1, tzinfo=timezone.utc),
        ),
    )


class TestSessionToken:
    """Test session token creation and decoding."""

    def test_create_and_decode_roundtrip(self):
        user = _session_user()
        decoded = decode_session_token(create_session_token(user))
        assert decoded == user

    def test_invalid_token_returns_none(self):
        assert decode_session_token("completely-invalid-token") is None

    def test_tampered_token_returns_none(self):
        token = create_session_token(_session_user())
        tampered = token[:-5] + "XXXXX"
        assert decode_session_token(tampered) is None

    def test_empty_token_returns_none(self):
        assert decode_session_token("") is None
