from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from claimgate.config import Settings
from claimgate.logging import get_logger
from claimgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from claimgate.service.passwords import CredentialHasher
from claimgate.storage.errors import DuplicateEmail
from claimgate.storage.models import Account, CredentialSession, LoginGrant, Role

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        name: str,
        *,
        role: Role = Role.USER,
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        claim_token: Optional[str] = None,
        claim_token_expires: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        email: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Account], int]: ...

    def update_account(self, account_id: str, **fields) -> Optional[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    def create_credential_session(
        self, account_id: str, ttl: timedelta, user_agent: Optional[str] = None
    ) -> CredentialSession: ...

    def delete_credential_session(self, session_id: str) -> bool: ...

    def delete_credential_sessions_for_account(self, account_id: str) -> int: ...

    def delete_expired_credential_sessions(self, now: datetime) -> int: ...

    def delete_temp_sessions_for_account(self, account_id: str) -> int: ...

    def pop_login_grant(self, token: str) -> Optional[LoginGrant]: ...

    def delete_expired_login_grants(self, now: datetime) -> int: ...


class AuthService:
    """Password accounts: registration, login, login grants and account administration."""

    def __init__(self, store: AuthStore, hasher: CredentialHasher, settings: Settings) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.logger = logger
        self._decoy_digest: Optional[str] = None

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.credential_session_ttl_hours)

    def _check_password_policy(self, password: str) -> None:
        if len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters"
            )

    def _open_session(self, account: Account, user_agent: Optional[str]) -> CredentialSession:
        return self.store.create_credential_session(
            account.id, self.session_ttl, user_agent=user_agent
        )

    async def register(
        self,
        email: str,
        name: str,
        password: str,
        *,
        phone: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, CredentialSession]:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        self._check_password_policy(password)
        if self.store.get_account_by_email(email):
            raise ConflictError("account already exists", detail={"field": "email"})
        digest = await self.hasher.hash_async(password)
        try:
            account = self.store.create_account(
                email, name, phone=phone, password_hash=digest
            )
        except DuplicateEmail as exc:
            raise ConflictError("account already exists", detail={"field": "email"}) from exc
        self.logger.info("account_registered", account_id=account.id)
        return account, self._open_session(account, user_agent)

    async def _decoy(self) -> str:
        # Unknown emails still pay for one verify so response time does not reveal them.
        if self._decoy_digest is None:
            self._decoy_digest = await self.hasher.hash_async("decoy-password-never-matches")
        return self._decoy_digest

    async def login(
        self, email: str, password: str, *, user_agent: Optional[str] = None
    ) -> Tuple[Account, CredentialSession]:
        account = self.store.get_account_by_email(email)
        digest = account.password_hash if account and account.password_hash else None
        verified = await self.hasher.verify_async(password, digest or await self._decoy())
        if not account or not digest or not verified:
            self.logger.warning(
                "login_failed",
                reason="unknown_account" if not account else (
                    "unclaimed_account" if not digest else "bad_password"
                ),
            )
            raise AuthenticationError("invalid credentials")
        session = self._open_session(account, user_agent)
        self.logger.info("login_succeeded", account_id=account.id)
        return account, session

    def logout(self, session_id: Optional[str]) -> None:
        if session_id and self.store.delete_credential_session(session_id):
            self.logger.info("credential_session_revoked")

    def redeem_login_grant(
        self, grant_token: str, *, user_agent: Optional[str] = None
    ) -> Tuple[Account, CredentialSession]:
        """Exchange the single-use grant returned by a claim for a credential session."""
        grant = self.store.pop_login_grant(grant_token) if grant_token else None
        if not grant or grant.expires_at <= self._now():
            self.logger.warning("login_grant_rejected", found=grant is not None)
            raise AuthenticationError("invalid or expired login grant")
        account = self.store.get_account(grant.account_id)
        if not account or not account.claimed:
            self.logger.warning("login_grant_rejected", reason="account_state")
            raise AuthenticationError("invalid or expired login grant")
        return account, self._open_session(account, user_agent)

    def revoke_all_sessions(self, account_id: str) -> int:
        removed = self.store.delete_credential_sessions_for_account(account_id)
        removed += self.store.delete_temp_sessions_for_account(account_id)
        return removed

    def purge_expired(self) -> int:
        now = self._now()
        removed = self.store.delete_expired_credential_sessions(now)
        if removed:
            self.logger.info("credential_sessions_purged", count=removed)
        grants = self.store.delete_expired_login_grants(now)
        if grants:
            self.logger.info("login_grants_purged", count=grants)
        return removed + grants

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        return self.store.list_accounts(
            role=role, email=email, offset=(page - 1) * limit, limit=min(limit, 100)
        )

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def set_role(self, account_id: str, role: Role) -> Account:
        account = self.store.update_account(account_id, role=Role(role))
        if not account:
            raise NotFoundError("account not found")
        if account.role == Role.ADMIN:
            # Temp sessions are already refused at validation; drop the rows too.
            self.store.delete_temp_sessions_for_account(account_id)
        self.logger.info("account_role_changed", account_id=account_id, role=account.role.value)
        return account

    def delete_account(self, account_id: str) -> None:
        if not self.store.delete_account(account_id):
            raise NotFoundError("account not found")
        self.logger.info("account_deleted", account_id=account_id)

    async def ensure_admin(self, email: str, name: str, password: str) -> Tuple[Account, str]:
        """Create an admin account, or promote an existing claimed one. Returns (account, status)."""
        self._check_password_policy(password)
        existing = self.store.get_account_by_email(email)
        if existing:
            if not existing.claimed:
                raise ConflictError("account is still pending its claim")
            if existing.role == Role.ADMIN:
                return existing, "already_admin"
            return self.set_role(existing.id, Role.ADMIN), "promoted"
        digest = await self.hasher.hash_async(password)
        account = self.store.create_account(email, name, role=Role.ADMIN, password_hash=digest)
        self.logger.info("admin_account_created", account_id=account.id)
        return account, "created"
