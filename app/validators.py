"""
Input validation, storage sanitization and display escaping.

Post text is sanitized once when written and escaped again whenever it is
rendered as markup, so stored values are escaped twice on display.
"""

from __future__ import annotations

import html
import re
from typing import Any

from app.models import FormValidation

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_POST_LENGTH = 1000

_STORAGE_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_STORAGE_PATTERN = re.compile(r"[<>\"'/]")


def sanitize_for_storage(value: Any) -> Any:
    """
    Trim and escape HTML metacharacters before a value is persisted.

    Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    return _STORAGE_PATTERN.sub(lambda m: _STORAGE_ESCAPES[m.group(0)], value.strip())


def escape_for_display(value: Any) -> Any:
    """Escape text for safe insertion into markup. Non-strings pass through."""
    if not isinstance(value, str):
        return value
    return html.escape(value, quote=True)


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email or ""))


def validate_password(password: str, app_env: str = "development") -> str | None:
    """
    Check a password against the sign-up policy.

    Args:
        password: Candidate password
        app_env: Deployment environment; production requires 8 characters

    Returns:
        Error message, or None if the password is acceptable
    """
    min_length = 8 if app_env == "production" else 6

    if len(password) < min_length:
        return f"Password must be at least {min_length} characters"
    if not re.search(r"[a-zA-Z]", password):
        return "Password must contain a letter"
    if not re.search(r"\d", password):
        return "Password must contain a number"
    return None


def validate_post(text: str) -> str | None:
    """Return an error message if the post is empty or too long after sanitizing."""
    sanitized = sanitize_for_storage(text)
    if not isinstance(sanitized, str) or len(sanitized) == 0:
        return "Post cannot be empty"
    if len(sanitized) > MAX_POST_LENGTH:
        return f"Post cannot exceed {MAX_POST_LENGTH} characters"
    return None


def validate_form(
    email: str | None = None,
    password: str | None = None,
    display_name: str | None = None,
    post: str | None = None,
    app_env: str = "development",
) -> FormValidation:
    """Validate the provided form fields, skipping any that are not given."""
    errors: dict[str, str] = {}

    if email and not validate_email(email):
        errors["email"] = "Invalid email format"

    if password:
        password_error = validate_password(password, app_env)
        if password_error:
            errors["password"] = password_error

    if display_name and not display_name.strip():
        errors["display_name"] = "Full name is required"

    if post:
        post_error = validate_post(post)
        if post_error:
            errors["post"] = post_error

    return FormValidation(is_valid=not errors, errors=errors)
