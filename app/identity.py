"""
Identity provider interface and an in-process implementation.

Provider failures are raised as AuthError carrying a provider error code
(e.g. ``auth/wrong-password``) that maps to a user-facing message.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.models import ProviderInfo, UserInfo, UserMetadata, utcnow

logger = logging.getLogger(__name__)

AUTH_ERROR_MESSAGES: dict[str, str] = {
    "auth/invalid-email": "Invalid email address",
    "auth/user-disabled": "This account has been disabled",
    "auth/user-not-found": "User not found",
    "auth/wrong-password": "Wrong password",
    "auth/email-already-in-use": "Email is already in use",
    "auth/weak-password": "Password is too weak (at least 6 characters)",
    "auth/network-request-failed": "Network connection failed",
    "auth/too-many-requests": "Too many attempts, please try again later",
    "auth/operation-not-allowed": "Operation not allowed",
    "auth/popup-closed-by-user": "Login popup was closed",
    "auth/popup-blocked": "Login popup was blocked by the browser",
    "auth/requires-recent-login": "Please sign in again to perform this action",
}

DEFAULT_AUTH_ERROR_MESSAGE = "Something went wrong, please try again"


def get_auth_error_message(code: str | None) -> str:
    """Map a provider error code to a user-facing message."""
    return AUTH_ERROR_MESSAGES.get(code or "", DEFAULT_AUTH_ERROR_MESSAGE)


class AuthError(Exception):
    """Identity provider failure identified by an error code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        self.message = message or get_auth_error_message(code)
        super().__init__(self.message)


class IdentityProvider:
    """Operations the authentication flow needs from the identity platform."""

    async def sign_in_with_password(self, email: str, password: str) -> UserInfo:
        raise NotImplementedError

    async def create_user(self, email: str, password: str) -> UserInfo:
        raise NotImplementedError

    async def update_profile(self, uid: str, display_name: str | None = None) -> UserInfo:
        raise NotImplementedError

    async def send_email_verification(self, uid: str) -> None:
        raise NotImplementedError

    async def sign_in_with_google(self, credential: str) -> UserInfo:
        raise NotImplementedError

    async def reauthenticate(self, uid: str, password: str) -> None:
        raise NotImplementedError

    async def update_password(self, uid: str, new_password: str) -> None:
        raise NotImplementedError

    async def sign_out(self, uid: str) -> None:
        raise NotImplementedError

    async def get_user(self, uid: str) -> UserInfo | None:
        raise NotImplementedError


@dataclass
class _Account:
    uid: str
    email: str
    password_hash: str | None = None
    display_name: str | None = None
    email_verified: bool = False
    disabled: bool = False
    providers: list[ProviderInfo] = field(default_factory=list)
    creation_time: datetime = field(default_factory=utcnow)
    last_sign_in_time: datetime | None = None


def _hash_password(password: str, salt: bytes | None = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 200_000)
    return f"{salt.hex()}${digest.hex()}"


def _check_password(password: str, stored: str) -> bool:
    salt_hex, _, _ = stored.partition("$")
    candidate = _hash_password(password, bytes.fromhex(salt_hex))
    return hmac.compare_digest(candidate, stored)


class InMemoryIdentityProvider(IdentityProvider):
    """
    Identity provider holding accounts in process memory.

    Google identities must be registered with ``register_google_identity``
    before a credential can be exchanged for a session.
    """

    MIN_PASSWORD_LENGTH = 6

    def __init__(self) -> None:
        self._accounts: dict[str, _Account] = {}
        self._by_email: dict[str, str] = {}
        self._google: dict[str, dict[str, Any]] = {}
        self._verification_sent: dict[str, int] = {}
        self._lock = threading.Lock()

    # ---------- Helpers ----------

    def _to_user(self, account: _Account) -> UserInfo:
        return UserInfo(
            uid=account.uid,
            email=account.email,
            display_name=account.display_name,
            email_verified=account.email_verified,
            provider_data=list(account.providers),
            metadata=UserMetadata(
                creation_time=account.creation_time,
                last_sign_in_time=account.last_sign_in_time,
            ),
        )

    def _account(self, uid: str) -> _Account:
        account = self._accounts.get(uid)
        if account is None:
            raise AuthError("auth/user-not-found")
        return account

    def register_google_identity(
        self,
        credential: str,
        email: str,
        display_name: str | None = None,
        email_verified: bool = True,
    ) -> None:
        """Make a Google credential exchangeable for the given profile."""
        self._google[credential] = {
            "sub": uuid.uuid5(uuid.NAMESPACE_URL, f"google:{email}").hex,
            "email": email.strip().lower(),
            "name": display_name,
            "email_verified": email_verified,
        }

    def disable_user(self, uid: str) -> None:
        self._account(uid).disabled = True

    def verify_email(self, uid: str) -> None:
        self._account(uid).email_verified = True

    def verification_emails_sent(self, uid: str) -> int:
        return self._verification_sent.get(uid, 0)

    # ---------- IdentityProvider ----------

    async def sign_in_with_password(self, email: str, password: str) -> UserInfo:
        email = email.strip().lower()
        with self._lock:
            uid = self._by_email.get(email)
            if uid is None:
                raise AuthError("auth/user-not-found")
            account = self._accounts[uid]
            if account.disabled:
                raise AuthError("auth/user-disabled")
            stored = account.password_hash

        if stored is None or not await asyncio.to_thread(_check_password, password, stored):
            raise AuthError("auth/wrong-password")

        with self._lock:
            account.last_sign_in_time = utcnow()
            return self._to_user(account)

    async def create_user(self, email: str, password: str) -> UserInfo:
        email = email.strip().lower()
        if "@" not in email:
            raise AuthError("auth/invalid-email")
        if len(password) < self.MIN_PASSWORD_LENGTH:
            raise AuthError("auth/weak-password")

        password_hash = await asyncio.to_thread(_hash_password, password)
        with self._lock:
            if email in self._by_email:
                raise AuthError("auth/email-already-in-use")
            uid = uuid.uuid4().hex
            now = utcnow()
            account = _Account(
                uid=uid,
                email=email,
                password_hash=password_hash,
                providers=[ProviderInfo(provider_id="password", uid=email, email=email)],
                creation_time=now,
                last_sign_in_time=now,
            )
            self._accounts[uid] = account
            self._by_email[email] = uid
            logger.info("Created account %s", uid)
            return self._to_user(account)

    async def update_profile(self, uid: str, display_name: str | None = None) -> UserInfo:
        with self._lock:
            account = self._account(uid)
            account.display_name = display_name
            return self._to_user(account)

    async def send_email_verification(self, uid: str) -> None:
        with self._lock:
            account = self._account(uid)
            self._verification_sent[uid] = self._verification_sent.get(uid, 0) + 1
        logger.info("Verification email queued for %s", account.email)

    async def sign_in_with_google(self, credential: str) -> UserInfo:
        profile = self._google.get(credential)
        if profile is None:
            raise AuthError("auth/invalid-credential")

        with self._lock:
            uid = self._by_email.get(profile["email"])
            now = utcnow()
            if uid is None:
                uid = uuid.uuid4().hex
                account = _Account(
                    uid=uid,
                    email=profile["email"],
                    display_name=profile["name"],
                    email_verified=profile["email_verified"],
                    creation_time=now,
                )
                self._accounts[uid] = account
                self._by_email[profile["email"]] = uid
            account = self._accounts[uid]
            if account.disabled:
                raise AuthError("auth/user-disabled")
            if not any(p.provider_id == "google.com" for p in account.providers):
                account.providers.append(
                    ProviderInfo(
                        provider_id="google.com",
                        uid=profile["sub"],
                        email=profile["email"],
                        display_name=profile["name"],
                    )
                )
            if profile["email_verified"]:
                account.email_verified = True
            account.last_sign_in_time = now
            return self._to_user(account)

    async def reauthenticate(self, uid: str, password: str) -> None:
        with self._lock:
            stored = self._account(uid).password_hash
        if stored is None:
            raise AuthError("auth/operation-not-allowed")
        if not await asyncio.to_thread(_check_password, password, stored):
            raise AuthError("auth/wrong-password")

    async def update_password(self, uid: str, new_password: str) -> None:
        if len(new_password) < self.MIN_PASSWORD_LENGTH:
            raise AuthError("auth/weak-password")
        password_hash = await asyncio.to_thread(_hash_password, new_password)
        with self._lock:
            self._account(uid).password_hash = password_hash

    async def sign_out(self, uid: str) -> None:
        logger.debug("Signed out %s", uid)

    async def get_user(self, uid: str) -> UserInfo | None:
        account = self._accounts.get(uid)
        return self._to_user(account) if account else None
