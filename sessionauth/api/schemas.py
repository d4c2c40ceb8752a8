from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionauth.storage.models import User

# Credential strings are bounded here; policy checks live in the service layer
MAX_SECRET_LENGTH = 1024
MAX_TOKEN_LENGTH = 512

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "email_not_verified",
    "invalid_token",
    "already_verified",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width characters and apply NFKC normalization."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _EmailPayload(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value).strip().lower()


class RegisterRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class LoginRequest(_EmailPayload):
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class ResendVerificationRequest(_EmailPayload):
    pass


class ForgotPasswordRequest(_EmailPayload):
    pass


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class ChangePasswordRequest(BaseModel):
    """Change password while logged in; the current password is required."""

    current_password: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)
    new_password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class UpdateProfileRequest(_EmailPayload):
    pass


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=32)

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        return value.strip().lower()


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    email_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            email_verified=user.email_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    session_id: str
    token: str
    token_type: str = "bearer"
    expires_at: datetime


class RotateResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime


class SessionResponse(BaseModel):
    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_activity_at: datetime
    created_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: Pagination


class MessageResponse(BaseModel):
    message: str


class ResetTokenStatusResponse(BaseModel):
    valid: bool
    email: Optional[str] = None
    message: Optional[str] = None
