from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from marketauth.logging import get_correlation_id
from marketauth.storage.models import REGISTRATION_ROLES

MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "duplicate_account",
    "email_not_verified",
    "invalid_credential",
    "expired_credential",
    "session_revoked",
    "invalid_or_expired_token",
    "invalid_assertion",
    "storage_unavailable",
    "rate_limited",
    "validation_error",
    "not_found",
    "method_not_allowed",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, documented code."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
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


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _Request(BaseModel):
    # Accept both snake_case and the camelCase names older clients send
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_Request):
    email: str
    password: str
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    role: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in REGISTRATION_ROLES:
            raise ValueError("role must be one of: customer, seller, provider")
        return normalized


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_Request):
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=MAX_TOKEN_LENGTH,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class LogoutRequest(RefreshRequest):
    pass


class EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(_Request):
    token: str = Field(..., min_length=1, max_length=256)


class ResetPasswordRequest(_Request):
    token: str = Field(..., min_length=10, max_length=256)
    password: str = Field(validation_alias=AliasChoices("password", "new_password", "newPassword"))

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(_Request):
    current_password: str = Field(
        ...,
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("current_password", "currentPassword"),
    )
    new_password: str = Field(
        ..., validation_alias=AliasChoices("new_password", "newPassword")
    )

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class GoogleLoginRequest(_Request):
    id_token: str = Field(
        ...,
        min_length=1,
        max_length=MAX_TOKEN_LENGTH,
        validation_alias=AliasChoices("id_token", "idToken"),
    )


class AccountResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    email_verified: bool
    email_verified_at: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class AuthResponse(BaseModel):
    account: AccountResponse
    tokens: TokenPairResponse


class MessageResponse(BaseModel):
    ok: bool = True
    message: str


class RevokedResponse(BaseModel):
    ok: bool = True
    revoked_count: int
