from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from claimgate.logging import get_correlation_id
from claimgate.service.service_tokens import parse_expires_in
from claimgate.storage.models import Account, Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
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


class Envelope(BaseModel):
    """Uniform response wrapper: ``data`` on success, ``error`` on failure."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _strip_invisible(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _strip_invisible(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = _strip_invisible(value).strip()
    if not cleaned:
        raise ValueError("name must not be empty")
    return cleaned


class _EmailModel(BaseModel):
    @field_validator("email", check_fields=False)
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


# user-facing requests
class RegisterRequest(_EmailModel):
    name: str = Field(..., max_length=200)
    email: str
    password: str = Field(..., max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(_EmailModel):
    email: str
    password: str = Field(..., max_length=128)


class ClaimRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., max_length=128)


class ContinueRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class LoginGrantRequest(BaseModel):
    grant: str = Field(..., min_length=1, max_length=256)


class InviteRequest(_EmailModel):
    name: str = Field(..., max_length=200)
    email: str
    role: Role = Role.USER
    phone: Optional[str] = Field(default=None, max_length=32)
    expires_in_hours: int = Field(default=24, ge=1, le=168)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)


class RoleUpdateRequest(BaseModel):
    role: Role


# service requests
class ServiceTokenRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str = Field(..., min_length=1, max_length=512)
    scopes: List[str] = Field(..., min_length=1)
    expires_in: str = Field(default="24h", max_length=16)

    @field_validator("expires_in")
    @classmethod
    def _check_expires_in(cls, value: str) -> str:
        parse_expires_in(value)
        return value


class ServiceCreateUserRequest(_EmailModel):
    name: str = Field(..., max_length=200)
    email: str
    phone: Optional[str] = Field(default=None, max_length=32)
    role: Role = Role.USER

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)


class ServiceInviteRequest(InviteRequest):
    pass


class ServiceSessionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


# responses
class AccountOut(BaseModel):
    id: str
    email: str
    name: str
    role: Role
    phone: Optional[str] = None
    claimed: bool
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountOut":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            phone=account.phone,
            claimed=account.claimed,
            created_at=account.created_at,
        )


class AuthResponse(BaseModel):
    user: AccountOut
    session_expires_at: datetime


class ClaimPreview(BaseModel):
    email: str
    name: str
    role: Role
    expires_at: datetime


class ClaimResponse(BaseModel):
    user: AccountOut
    login_grant: str
    login_grant_expires_at: datetime


class TempSessionResponse(BaseModel):
    user: AccountOut
    expires_at: datetime
    is_temporary: bool = True


class InvitationResponse(BaseModel):
    user: AccountOut
    claim_token: str
    claim_url: str
    expires_at: datetime
    reissued: bool = False


class InvitationStatusResponse(BaseModel):
    user: AccountOut
    status: str
    expires_at: Optional[datetime] = None


class ClaimTokenResponse(BaseModel):
    claim_token: str
    claim_url: str
    expires_at: datetime


class SessionUser(BaseModel):
    id: str
    email: str
    name: str
    role: Role


class SessionStatusResponse(BaseModel):
    user: Optional[SessionUser] = None
    auth_type: str
    status: str
    is_temporary: bool
    expires_at: Optional[datetime] = None
    permissions: Dict[str, Any]


class AccountPage(BaseModel):
    users: List[AccountOut]
    page: int
    limit: int
    total: int
    pages: int


class ServiceTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scopes: List[str]


class ServiceSessionOut(BaseModel):
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    is_expired: bool
    is_valid: bool
