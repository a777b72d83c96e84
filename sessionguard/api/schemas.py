from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_token",
    "conflict",
    "server_error",
    "unavailable",
    "timeout",
})

# Longest secret or password the API will hash
MAX_SECRET_LENGTH = 256


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RegisterResponse(BaseModel):
    user_id: str
    username: str
    email_verification_required: bool = True


class LoginRequest(_CamelModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    remember_me: bool
    refresh_expires_at: datetime


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    remember_me: bool
    refresh_expires_at: datetime


class ForgotPasswordRequest(BaseModel):
    """Accepts the account's email or username."""

    identifier: str = Field(..., min_length=1, max_length=254)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class ResetPasswordRequest(_CamelModel):
    token_id: str = Field(..., alias="tokenId", min_length=1, max_length=64)
    token: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_SECRET_LENGTH)
    confirm_new_password: str = Field(
        ..., alias="confirmNewPassword", max_length=MAX_SECRET_LENGTH
    )


class UpdateAccountRequest(_CamelModel):
    """Omitted or empty fields stay unchanged."""

    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    old_password: Optional[str] = Field(
        default=None, alias="oldPassword", max_length=MAX_SECRET_LENGTH
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_SECRET_LENGTH
    )

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip()) or None


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    email_verified: bool
    created_at: datetime


class AccountUpdateResponse(UserResponse):
    email_changed: bool = False
    password_changed: bool = False
    sessions_revoked: int = 0
