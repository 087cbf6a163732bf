from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi-override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "not_verified",
    "forbidden",
    "not_found",
    "validation_error",
    "email_taken",
    "invalid_token",
    "invalid_or_expired_token",
    "conflict",
    "payload_too_large",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
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


class ErrorEnvelope(BaseModel):
    status: str = Field("error", pattern="^error$")
    message: str
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: str(uuid4()))


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


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if len(cleaned) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(cleaned) > 100:
        raise ValueError("name must be at most 100 characters")
    return cleaned


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# -- requests ---------------------------------------------------------


class RegisterRequest(CamelModel):
    name: str
    email: str
    password: str
    role: Optional[Literal["admin", "user"]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(CamelModel):
    email: str
    # login checks against the stored hash only; no strength rules here
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value)


# -- responses --------------------------------------------------------


class UserProfile(CamelModel):
    id: str
    name: str
    email: str
    role: str
    profile_image: Optional[str] = Field(default=None, alias="profileImage")
    is_verified: bool = Field(default=False, alias="isVerified")
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class MessageResponse(CamelModel):
    message: str


class UserEnvelope(CamelModel):
    message: str
    user: UserProfile


class LoginResponse(CamelModel):
    message: str
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    user: UserProfile


class TokenPairResponse(CamelModel):
    message: str
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")


class Pagination(CamelModel):
    current_page: int = Field(alias="currentPage")
    total_pages: int = Field(alias="totalPages")
    total_users: int = Field(alias="totalUsers")
    has_next_page: bool = Field(alias="hasNextPage")
    has_prev_page: bool = Field(alias="hasPrevPage")


class UserListResponse(CamelModel):
    message: str
    users: List[UserProfile]
    pagination: Pagination


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, Any]
    version: str
    timestamp: str
