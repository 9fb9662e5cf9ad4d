from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storefront_auth.storage.models import User

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 2048


class Envelope(BaseModel):
    """Response body shared by every auth endpoint."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    code: Optional[str] = None
    details: Optional[Any] = None

    def to_content(self) -> dict:
        return self.model_dump(exclude_none=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    email = unicodedata.normalize("NFKC", value or "").strip().lower()
    if len(email) > 254 or email.count("@") != 1:
        raise ValueError("invalid email address")
    local, domain = email.split("@")
    if not local or len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address")
    if local.startswith(".") or local.endswith(".") or ".." in local:
        raise ValueError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address")
    return email


def _require_encodable(value: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError("contains characters that cannot be encoded")
    return value


def _validate_password_strength(value: str) -> str:
    _require_encodable(value)
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError("password must mix upper case, lower case and digits")
    return value


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    _require_encodable(value)
    cleaned = unicodedata.normalize("NFKC", value).strip()
    return cleaned or None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)

    @model_validator(mode="after")
    def _passwords_match(self) -> "RegisterRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # no format check: a malformed address is just an unknown account
        return _require_encodable(unicodedata.normalize("NFKC", value).strip().lower())


class RefreshRequest(BaseModel):
    """Refresh secret in the body; the cookie is used when this is empty."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


class LogoutRequest(RefreshRequest):
    pass


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    role: str
    email_verified: bool = Field(alias="emailVerified")
    last_login_at: Optional[datetime] = Field(default=None, alias="lastLoginAt")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: UserResponse
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
