from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol

from claimgate.logging import get_logger
from claimgate.storage.models import Account, CredentialSession, Role

if TYPE_CHECKING:
    from claimgate.service.temp_sessions import TemporarySessionManager

logger = get_logger(__name__)


class AuthType(str, Enum):
    CREDENTIALS = "credentials"
    TOKEN = "token"
    NONE = "none"


class AuthStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    AUTHENTICATED_ADMIN = "authenticated_admin"
    AUTHENTICATED_TEMPORARY = "authenticated_temporary"
    UNAUTHENTICATED = "unauthenticated"


def token_auth_permitted(account: Account) -> bool:
    """Whether an account may hold a password-less (token link) session.

    This is the one place the "temporary sessions never reach admin" rule is
    decided; temp-session issuance, temp-session validation and the service
    session API all ask here.
    """
    return account.role != Role.ADMIN


class CredentialSessionStore(Protocol):
    def get_credential_session(self, session_id: str) -> Optional[CredentialSession]: ...

    def delete_credential_session(self, session_id: str) -> bool: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class ResolvedSession:
    """Effective identity of a request plus the capabilities derived from it."""

    status: AuthStatus
    auth_type: AuthType
    account_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Role] = None
    is_temporary: bool = False
    expires_at: Optional[datetime] = None

    @classmethod
    def unauthenticated(cls) -> "ResolvedSession":
        return cls(status=AuthStatus.UNAUTHENTICATED, auth_type=AuthType.NONE)

    @classmethod
    def for_credentials(cls, account: Account, expires_at: datetime) -> "ResolvedSession":
        return cls(
            status=(
                AuthStatus.AUTHENTICATED_ADMIN
                if account.role == Role.ADMIN
                else AuthStatus.AUTHENTICATED
            ),
            auth_type=AuthType.CREDENTIALS,
            account_id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            expires_at=expires_at,
        )

    @classmethod
    def for_temporary(cls, account: Account, expires_at: datetime) -> "ResolvedSession":
        # Role is always USER here regardless of the stored role.
        return cls(
            status=AuthStatus.AUTHENTICATED_TEMPORARY,
            auth_type=AuthType.TOKEN,
            account_id=account.id,
            email=account.email,
            name=account.name,
            role=Role.USER,
            is_temporary=True,
            expires_at=expires_at,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.status != AuthStatus.UNAUTHENTICATED

    @property
    def is_admin(self) -> bool:
        return self.status == AuthStatus.AUTHENTICATED_ADMIN

    @property
    def can_access_authenticated_area(self) -> bool:
        return self.is_authenticated

    @property
    def can_access_admin_area(self) -> bool:
        return self.is_admin and not self.is_temporary

    @property
    def can_initiate_claim(self) -> bool:
        return self.is_temporary

    def permissions(self) -> dict[str, Any]:
        return {
            "is_authenticated": self.is_authenticated,
            "is_admin": self.is_admin,
            "is_temporary": self.is_temporary,
            "can_access_dashboard": self.can_access_authenticated_area,
            "can_access_admin": self.can_access_admin_area,
            "can_modify_users": self.can_access_admin_area,
            "can_claim_account": self.can_initiate_claim,
            "auth_type": self.auth_type.value,
        }


class SessionResolver:
    """Resolve a request's identity from explicitly passed session artifacts.

    Precedence, first match wins:

    1. a valid credential session (role honoured, including ADMIN);
    2. a valid temporary session (role forced to USER, flagged temporary);
    3. otherwise unauthenticated.

    Expired records found along the way are deleted before moving on.
    """

    def __init__(
        self,
        store: CredentialSessionStore,
        temp_sessions: "TemporarySessionManager",
    ) -> None:
        self.store = store
        self.temp_sessions = temp_sessions

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def resolve(
        self,
        credential_session_id: Optional[str] = None,
        temp_session_token: Optional[str] = None,
    ) -> ResolvedSession:
        if credential_session_id:
            resolved = self._resolve_credential_session(credential_session_id)
            if resolved:
                return resolved
        if temp_session_token:
            active = self.temp_sessions.validate(temp_session_token)
            if active:
                return ResolvedSession.for_temporary(active.account, active.session.expires_at)
        return ResolvedSession.unauthenticated()

    def _resolve_credential_session(self, session_id: str) -> Optional[ResolvedSession]:
        session = self.store.get_credential_session(session_id)
        if not session:
            return None
        if session.expires_at <= self._now():
            self.store.delete_credential_session(session_id)
            logger.info("credential_session_expired", account_id=session.account_id)
            return None
        account = self.store.get_account(session.account_id)
        if not account or not account.claimed:
            self.store.delete_credential_session(session_id)
            logger.warning("credential_session_orphaned", account_id=session.account_id)
            return None
        return ResolvedSession.for_credentials(account, session.expires_at)
