"""
Pydantic models for request/response schemas and domain records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["low", "medium", "high"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderInfo(BaseModel):
    """One sign-in method linked to an account."""

    provider_id: str
    uid: str
    email: str | None = None
    display_name: str | None = None


class UserMetadata(BaseModel):
    """Account timestamps reported by the identity provider."""

    creation_time: datetime | None = None
    last_sign_in_time: datetime | None = None


class UserInfo(BaseModel):
    """Authenticated user information."""

    uid: str
    email: str | None = None
    display_name: str | None = None
    email_verified: bool = False
    provider_data: list[ProviderInfo] = Field(default_factory=list)
    metadata: UserMetadata = Field(default_factory=UserMetadata)


class LoginRequest(BaseModel):
    """Request model for email/password login."""

    email: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=1, max_length=200)


class RegisterRequest(BaseModel):
    """Request model for account registration."""

    email: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=1, max_length=200)
    display_name: str | None = Field(default=None, max_length=200)


class GoogleLoginRequest(BaseModel):
    """Request model for Google sign-in with a credential from the OAuth flow."""

    credential: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=200)
    new_password: str = Field(..., min_length=1, max_length=200)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(default="", max_length=200)


class PostCreateRequest(BaseModel):
    text: str


class Post(BaseModel):
    """A stored post. ``text`` holds the value sanitized at write time."""

    id: str
    text: str
    user_id: str
    user_email: str | None = None
    display_name: str | None = None
    created_at: datetime
    public: bool = False
    sanitized: bool = True


class PostView(Post):
    """Post as returned to clients, with markup-safe text."""

    text_html: str


class SecurityEvent(BaseModel):
    """A classified security-relevant occurrence. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    user_id: str | None = None
    user_agent: str = "unknown"
    timestamp: datetime = Field(default_factory=utcnow)
    ip_address: str = "unknown"
    details: dict[str, Any] = Field(default_factory=dict)
    severity: Severity = "low"
    environment: str = "development"


class PasswordStrengthResult(BaseModel):
    """Result of scoring a password."""

    score: int = Field(..., ge=0, le=6)
    strength: str
    is_strong: bool


class SessionValidation(BaseModel):
    is_valid: bool
    reason: str | None = None
    warning: str | None = None
    recommendation: str | None = None


class AuditCheck(BaseModel):
    passed: bool
    importance: Severity
    recommendation: str | None = None


class SecurityAudit(BaseModel):
    """Account security checklist for the security center."""

    timestamp: datetime = Field(default_factory=utcnow)
    user_id: str
    checks: dict[str, AuditCheck] = Field(default_factory=dict)


class FormValidation(BaseModel):
    is_valid: bool
    errors: dict[str, str] = Field(default_factory=dict)
