from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studybuddy.logging import get_correlation_id

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 50
AVATAR_MAX_LENGTH = 2048
# raw one-time tokens are 64 hex chars; anything longer is not ours
ONE_TIME_TOKEN_MAX_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""

    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    code: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response body shared by every endpoint, success or failure."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_password_strength(value: str) -> str:
    """8-128 chars with upper, lower, digit and special character."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a number")
    if not re.search(r"[^A-Za-z0-9]", value):
        raise ValueError("password must contain a special character")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name cannot be blank")
    if len(cleaned) > NAME_MAX_LENGTH:
        raise ValueError(f"name must be at most {NAME_MAX_LENGTH} characters")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    # strength rules apply only where a password is set
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class EmailRequest(BaseModel):
    """Body for forgot-password and resend-verification."""

    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=ONE_TIME_TOKEN_MAX_LENGTH)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=ONE_TIME_TOKEN_MAX_LENGTH)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)


class Preferences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    theme: Optional[Literal["light", "dark"]] = None
    default_timer_duration: Optional[int] = Field(default=None, ge=1, le=240)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    preferences: Optional[Preferences] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("avatar")
    @classmethod
    def _validate_avatar(cls, value: Optional[str]) -> Optional[str]:
        # empty string clears the avatar
        if value is None:
            return None
        cleaned = value.strip()
        if len(cleaned) > AVATAR_MAX_LENGTH:
            raise ValueError(f"avatar must be at most {AVATAR_MAX_LENGTH} characters")
        return cleaned


class AccountResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    avatar: str = ""
    is_email_verified: bool
    status: str
    preferences: dict = Field(default_factory=dict)
    last_login_at: Optional[str] = None
    created_at: str


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: str
    account: Optional[AccountResponse] = None
