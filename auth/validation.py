"""
auth/validation.py -- Input shape checks for flow operations.

Each check returns a list of FieldError; an empty list means the input is
acceptable. The flow controller concatenates the lists and raises
ValidationFailed once at its boundary, so a caller sees every problem with a
request in one response rather than the first one only.

The HTTP layer runs the same rules through pydantic first; these checks
guard flows that are driven directly (scripts, tests, OAuth callbacks).
"""

from __future__ import annotations

import re

from auth.errors import FieldError

EMAIL_PATTERN = r"^\S+@\S+\.\S+$"
_EMAIL_RE = re.compile(EMAIL_PATTERN)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 255


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_name(name: str, path: str = "name") -> list[FieldError]:
    stripped = name.strip()
    if len(stripped) < NAME_MIN_LENGTH:
        return [FieldError(path, f"Name must be at least {NAME_MIN_LENGTH} characters")]
    if len(stripped) > NAME_MAX_LENGTH:
        return [FieldError(path, f"Name cannot exceed {NAME_MAX_LENGTH} characters")]
    return []


def check_email(email: str, path: str = "email") -> list[FieldError]:
    if not _EMAIL_RE.match(normalize_email(email)):
        return [FieldError(path, "Please provide a valid email")]
    return []


def check_password(password: str, path: str = "password") -> list[FieldError]:
    if len(password) < PASSWORD_MIN_LENGTH:
        return [FieldError(path, f"Password must be at least {PASSWORD_MIN_LENGTH} characters")]
    # bcrypt truncates at 72 bytes; the cap keeps inputs well clear of abuse.
    if len(password) > PASSWORD_MAX_LENGTH:
        return [FieldError(path, f"Password cannot exceed {PASSWORD_MAX_LENGTH} characters")]
    return []


def check_required(value: str | None, path: str, label: str) -> list[FieldError]:
    if not value:
        return [FieldError(path, f"{label} is required")]
    return []
