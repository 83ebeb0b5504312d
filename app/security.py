"""
Security event pipeline and security-center helpers.

Events are classified by severity and either written to the debug log
(development without security logging) or persisted to the ``security_logs``
collection on a background task. Persistence is best effort: failures are
logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import httpx

from app.config import Settings, get_settings
from app.db import DocumentStore
from app.models import (
    AuditCheck,
    PasswordStrengthResult,
    SecurityAudit,
    SecurityEvent,
    SessionValidation,
    Severity,
    UserInfo,
    utcnow,
)

logger = logging.getLogger(__name__)

SECURITY_LOG_COLLECTION = "security_logs"

HIGH_SEVERITY_EVENTS = frozenset({
    "login_failure",
    "suspicious_activity",
    "brute_force_attempt",
    "rate_limit_exceeded",
    "unauthorized_access",
})

# Emitted password changes use "password_changed", which is not listed here
MEDIUM_SEVERITY_EVENTS = frozenset({
    "password_change",
    "profile_update",
    "email_verification_resent",
})

PASSWORD_STRENGTH_LABELS = (
    "very weak",
    "weak",
    "fair",
    "good",
    "strong",
    "very strong",
    "excellent",
)

MAX_SESSION_AGE = timedelta(hours=24)
STALE_ACTIVITY_AGE = timedelta(days=30)

SECURITY_HEADERS: dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline' https://apis.google.com; "
        "style-src 'self' 'unsafe-inline';"
    ),
}

IPResolver = Callable[[], Awaitable[str]]


def classify(event_type: str) -> Severity:
    """Severity of an event type from the fixed classification tables."""
    if event_type in HIGH_SEVERITY_EVENTS:
        return "high"
    if event_type in MEDIUM_SEVERITY_EVENTS:
        return "medium"
    return "low"


async def lookup_public_ip(settings: Settings) -> str:
    """Best-effort public IP of this host. Never raises."""
    if settings.is_development:
        return "localhost"

    try:
        async with httpx.AsyncClient(timeout=settings.ip_lookup_timeout) as client:
            response = await client.get(settings.ip_lookup_url)
            response.raise_for_status()
            return str(response.json()["ip"])
    except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
        logger.debug("Public IP lookup failed: %s", exc)
        return "unknown"


class SecurityEventLogger:
    """Classifies security events and routes them to the log or the store."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        ip_resolver: IPResolver | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._ip_resolver = ip_resolver or (lambda: lookup_public_ip(self._settings))
        self._pending: set[asyncio.Task] = set()

    @property
    def persistence_enabled(self) -> bool:
        return self._settings.enable_security_logging or not self._settings.is_development

    async def _resolve_ip(self) -> str:
        try:
            return await self._ip_resolver()
        except Exception as exc:
            logger.debug("IP resolver failed: %s", exc)
            return "unknown"

    async def log_event(
        self,
        event_type: str,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SecurityEvent | None:
        """
        Build and persist a security event.

        Args:
            event_type: Event tag, e.g. ``login_failure``
            user_id: Affected user, if known
            details: Free-form context
            ip_address: Client address; resolved best-effort when omitted
            user_agent: Client user agent

        Returns:
            The persisted event, or None when only the debug log was written
        """
        details = details or {}

        if not self.persistence_enabled:
            logger.info("[SECURITY LOG] %s: user_id=%s details=%s", event_type, user_id, details)
            return None

        event = SecurityEvent(
            event_type=event_type,
            user_id=user_id,
            user_agent=user_agent or "unknown",
            timestamp=utcnow(),
            ip_address=ip_address or await self._resolve_ip(),
            details=details,
            severity=classify(event_type),
            environment=self._settings.app_env,
        )

        try:
            await asyncio.to_thread(
                self._store.add,
                SECURITY_LOG_COLLECTION,
                event.model_dump(mode="json"),
            )
        except Exception:
            logger.exception("Failed to log security event %s", event_type)
        return event

    def record(
        self,
        event_type: str,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Fire-and-forget variant of ``log_event``; callers never wait on persistence."""
        coro = self.log_event(
            event_type,
            user_id,
            details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return

        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all scheduled events to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def log_security_config(settings: Settings) -> None:
    logger.info(
        "Security configuration: max_login_attempts=%d login_timeout_minutes=%d "
        "enable_security_logging=%s app_env=%s",
        settings.max_login_attempts,
        settings.login_timeout_minutes,
        settings.enable_security_logging,
        settings.app_env,
    )


# ---------- Password strength ----------


def check_password_strength(password: str | None) -> PasswordStrengthResult:
    """Score a password from 0 to 6 on length and character variety."""
    if not password:
        return PasswordStrengthResult(score=0, strength=PASSWORD_STRENGTH_LABELS[0], is_strong=False)

    checks = (
        len(password) >= 8,
        len(password) >= 12,
        re.search(r"[a-z]", password) is not None,
        re.search(r"[A-Z]", password) is not None,
        re.search(r"\d", password) is not None,
        re.search(r"[^a-zA-Z\d]", password) is not None,
    )
    score = min(sum(checks), 6)

    return PasswordStrengthResult(
        score=score,
        strength=PASSWORD_STRENGTH_LABELS[score],
        is_strong=score >= 4,
    )


# ---------- Session and account checks ----------


def validate_session(user: UserInfo | None, now: datetime | None = None) -> SessionValidation:
    """Check that a signed-in user's session is still acceptable."""
    if user is None:
        return SessionValidation(is_valid=False, reason="No user session")

    if not user.email_verified:
        return SessionValidation(
            is_valid=True,
            warning="Email not verified",
            recommendation="Please verify your email for enhanced security",
        )

    last_sign_in = user.metadata.last_sign_in_time
    if last_sign_in is not None and (now or utcnow()) - last_sign_in > MAX_SESSION_AGE:
        return SessionValidation(
            is_valid=False,
            reason="Session expired",
            recommendation="Please login again",
        )

    return SessionValidation(is_valid=True)


def perform_security_audit(user: UserInfo | None, now: datetime | None = None) -> SecurityAudit:
    """Build the security-center checklist for an account."""
    audit = SecurityAudit(user_id=user.uid if user else "unknown")
    email_verified = bool(user and user.email_verified)
    providers = user.provider_data if user else []

    audit.checks["email_verified"] = AuditCheck(
        passed=email_verified,
        importance="high",
        recommendation=None if email_verified else "Verify your email address",
    )
    audit.checks["has_password"] = AuditCheck(
        passed=any(p.provider_id == "password" for p in providers),
        importance="medium",
        recommendation="Use a strong, unique password",
    )
    audit.checks["multiple_providers"] = AuditCheck(
        passed=len(providers) > 1,
        importance="low",
        recommendation="Consider adding multiple sign-in methods for backup",
    )

    last_sign_in = user.metadata.last_sign_in_time if user else None
    if last_sign_in is not None:
        recent = (now or utcnow()) - last_sign_in < STALE_ACTIVITY_AGE
        audit.checks["recent_activity"] = AuditCheck(
            passed=recent,
            importance="medium",
            recommendation=None if recent else "Consider reviewing account activity",
        )

    return audit


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(24)
