from __future__ import annotations

import re
from typing import List, Optional

from sessionauth.service.errors import ValidationError
from sessionauth.storage.models import ROLES

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
EMAIL_MAX_LENGTH = 255
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def normalize_email(email: str) -> str:
    return email.strip().lower()


def email_errors(email: Optional[str]) -> List[str]:
    if not email or not email.strip():
        return ["Email is required"]
    normalized = normalize_email(email)
    if len(normalized) > EMAIL_MAX_LENGTH:
        return [f"Email must be {EMAIL_MAX_LENGTH} characters or less"]
    if not EMAIL_PATTERN.match(normalized):
        return ["Invalid email format"]
    return []


def password_errors(password: Optional[str]) -> List[str]:
    if not password:
        return ["Password is required"]
    errors: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be {PASSWORD_MAX_LENGTH} characters or less")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    return errors


def _raise_if(errors: List[str]) -> None:
    if errors:
        raise ValidationError(errors[0], detail={"errors": errors})


def validate_email(email: Optional[str]) -> str:
    """Return the normalized address or raise ValidationError."""

    _raise_if(email_errors(email))
    return normalize_email(email or "")


def validate_password(password: Optional[str]) -> str:
    _raise_if(password_errors(password))
    return password or ""


def validate_new_password(password: Optional[str], confirm_password: Optional[str]) -> str:
    """Strength policy plus confirmation match, reported together."""

    errors = password_errors(password)
    if password != confirm_password:
        errors.append("Passwords do not match")
    _raise_if(errors)
    return password or ""


def validate_registration(
    email: Optional[str], password: Optional[str], confirm_password: Optional[str]
) -> str:
    """Collect every registration problem before raising; returns the normalized email."""

    errors = email_errors(email) + password_errors(password)
    if password != confirm_password:
        errors.append("Passwords do not match")
    _raise_if(errors)
    return normalize_email(email or "")


def validate_role(role: Optional[str]) -> str:
    if role not in ROLES:
        raise ValidationError(
            "Invalid role", detail={"errors": [f"Role must be one of: {', '.join(ROLES)}"]}
        )
    return role
