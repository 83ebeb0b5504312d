"""
Authentication module: rate-limited sign-in flows, security events, session cookies.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.config import get_settings
from app.identity import AuthError, IdentityProvider
from app.models import UserInfo
from app.rate_limit import RateLimiter
from app.security import SecurityEventLogger

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Login refused because the key used up its attempts for the window."""

    def __init__(self, remaining_minutes: int) -> None:
        self.remaining_minutes = remaining_minutes
        self.message = (
            f"Too many login attempts. Try again in {remaining_minutes} minutes."
        )
        super().__init__(self.message)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Sign-in, registration and account actions against the identity provider."""

    def __init__(
        self,
        identity: IdentityProvider,
        limiter: RateLimiter,
        events: SecurityEventLogger,
    ) -> None:
        self.identity = identity
        self.limiter = limiter
        self.events = events

    async def login_with_email(
        self,
        email: str,
        password: str,
        client: dict[str, Any] | None = None,
    ) -> UserInfo:
        """
        Sign in with email and password.

        Every call counts against the email's rate limit, successful or not.

        Raises:
            RateLimitExceeded: the email has no attempts left in the window
            AuthError: the identity provider rejected the credentials
        """
        client = client or {}
        key = normalize_email(email)

        if not self.limiter.attempt(key):
            remaining_minutes = math.ceil(self.limiter.get_remaining_time(key) / 60)
            logger.warning("Rate limited login attempt for %s", key)
            self.events.record(
                "rate_limit_exceeded",
                None,
                {"email": key, "remaining_time": remaining_minutes},
                **client,
            )
            raise RateLimitExceeded(remaining_minutes)

        try:
            user = await self.identity.sign_in_with_password(key, password)
        except AuthError as exc:
            logger.info("Failed login attempt for %s: %s", key, exc.code)
            self.events.record(
                "login_failure",
                None,
                {"email": key, "error": exc.code, "reason": exc.message},
                **client,
            )
            raise

        logger.info("Successful login: %s", user.uid)
        self.events.record("login_success", user.uid, {"method": "email_password"}, **client)
        return user

    async def register_with_email(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        client: dict[str, Any] | None = None,
    ) -> UserInfo:
        """Create an account, set its display name and send a verification email."""
        client = client or {}
        key = normalize_email(email)

        try:
            user = await self.identity.create_user(key, password)
            if display_name:
                user = await self.identity.update_profile(user.uid, display_name=display_name)
            await self.identity.send_email_verification(user.uid)
        except AuthError as exc:
            logger.info("Registration failed for %s: %s", key, exc.code)
            self.events.record("registration_failed", None, {"email": key, "error": exc.code}, **client)
            raise

        logger.info("Registered user %s", user.uid)
        self.events.record(
            "user_registered",
            user.uid,
            {"email": key, "has_display_name": bool(display_name)},
            **client,
        )
        return user

    async def login_with_google(
        self,
        credential: str,
        client: dict[str, Any] | None = None,
    ) -> UserInfo:
        """Exchange a Google OAuth credential for a signed-in user."""
        client = client or {}
        try:
            user = await self.identity.sign_in_with_google(credential)
        except AuthError as exc:
            logger.info("Google login failed: %s", exc.code)
            self.events.record(
                "login_failure",
                None,
                {"method": "google_oauth", "error": exc.code},
                **client,
            )
            raise

        logger.info("Successful Google login: %s", user.uid)
        self.events.record("login_success", user.uid, {"method": "google_oauth"}, **client)
        return user

    async def logout(self, user: UserInfo | None, client: dict[str, Any] | None = None) -> None:
        if user is None:
            return
        self.events.record("user_logout", user.uid, **(client or {}))
        await self.identity.sign_out(user.uid)
        logger.info("Logged out %s", user.uid)

    async def change_password(
        self,
        user: UserInfo,
        current_password: str,
        new_password: str,
        client: dict[str, Any] | None = None,
    ) -> None:
        """Re-authenticate with the current password, then set the new one."""
        client = client or {}
        if not user.email:
            raise AuthError("auth/operation-not-allowed", "User not authenticated")

        try:
            await self.identity.reauthenticate(user.uid, current_password)
            await self.identity.update_password(user.uid, new_password)
        except AuthError as exc:
            self.events.record("password_change_failed", user.uid, {"error": exc.code}, **client)
            raise

        self.events.record("password_changed", user.uid, **client)

    async def resend_email_verification(
        self,
        user: UserInfo,
        client: dict[str, Any] | None = None,
    ) -> None:
        await self.identity.send_email_verification(user.uid)
        self.events.record("email_verification_resent", user.uid, **(client or {}))


# ---------- Session cookies ----------


def _get_serializer() -> URLSafeTimedSerializer:
    """Get the session cookie serializer."""
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key)


def create_session_token(user: UserInfo) -> str:
    """Create a signed session token containing user info."""
    serializer = _get_serializer()
    return serializer.dumps(user.model_dump(mode="json"))


def decode_session_token(token: str) -> UserInfo | None:
    """Decode and verify a session token. Returns None if invalid/expired."""
    settings = get_settings()
    serializer = _get_serializer()
    try:
        data: dict[str, Any] = serializer.loads(
            token,
            max_age=settings.session_max_age,
        )
        return UserInfo.model_validate(data)
    except SignatureExpired:
        logger.info("Session token expired")
        return None
    except BadSignature:
        logger.warning("Invalid session token signature")
        return None
    except (ValueError, TypeError) as exc:
        logger.warning("Malformed session token: %s", exc)
        return None


def get_current_user_from_cookie(request: Request) -> UserInfo | None:
    """Extract and validate user from session cookie. Returns None if not authenticated."""
    settings = get_settings()
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return None
    return decode_session_token(token)


async def require_auth(request: Request) -> UserInfo:
    """FastAPI dependency: require authenticated user or raise 401."""
    user = get_current_user_from_cookie(request)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user
