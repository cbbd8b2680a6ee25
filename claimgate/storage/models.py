from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_opaque_token(nbytes: int = 32) -> str:
    """URL-safe random token; 32 bytes gives 256 bits of entropy."""
    return secrets.token_urlsafe(nbytes)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass
class Account:
    """Identity record.

    ``claimed``, ``password_hash is not None`` and ``claim_token is None`` always
    agree; stores only move an account between the invited and claimed shapes
    through :meth:`claim` and the invitation helpers.
    """

    id: str
    email: str
    name: str
    role: Role = Role.USER
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    claim_token: Optional[str] = None
    claim_token_expires: Optional[datetime] = None
    claimed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new_claimed(
        cls, email: str, name: str, password_hash: str, *, role: Role = Role.USER,
        phone: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=role,
            phone=phone,
            password_hash=password_hash,
            claimed=True,
        )

    @classmethod
    def new_invited(
        cls, email: str, name: str, claim_token: str, expires_at: datetime, *,
        role: Role = Role.USER, phone: Optional[str] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=role,
            phone=phone,
            claim_token=claim_token,
            claim_token_expires=expires_at,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def claim_is_open(self, now: datetime) -> bool:
        return (
            not self.claimed
            and self.claim_token is not None
            and self.claim_token_expires is not None
            and self.claim_token_expires > now
        )

    def claim(self, password_hash: str, now: datetime) -> None:
        self.password_hash = password_hash
        self.claimed = True
        self.claim_token = None
        self.claim_token_expires = None
        self.updated_at = now


@dataclass
class CredentialSession:
    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls, account_id: str, ttl: timedelta, user_agent: Optional[str] = None
    ) -> "CredentialSession":
        now = utcnow()
        return cls(
            id=new_opaque_token(),
            account_id=account_id,
            created_at=now,
            expires_at=now + ttl,
            user_agent=user_agent,
        )


@dataclass
class TempSession:
    token: str
    account_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, account_id: str, ttl: timedelta) -> "TempSession":
        now = utcnow()
        return cls(
            token=new_opaque_token(),
            account_id=account_id,
            created_at=now,
            expires_at=now + ttl,
        )


@dataclass
class LoginGrant:
    """Single-use token handed out after a claim, exchanged for a credential session."""

    token: str
    account_id: str
    expires_at: datetime

    @classmethod
    def new(cls, account_id: str, ttl: timedelta) -> "LoginGrant":
        return cls(
            token=new_opaque_token(),
            account_id=account_id,
            expires_at=utcnow() + ttl,
        )


@dataclass
class ServiceClient:
    id: str
    name: str
    secret: str
    allowed_scopes: List[str] = field(default_factory=list)
    is_active: bool = True
    rate_limit: Optional[int] = None
    ip_allowlist: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
