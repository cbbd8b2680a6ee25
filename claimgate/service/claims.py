from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Protocol

from claimgate.config import Settings
from claimgate.logging import get_logger
from claimgate.service.errors import (
    ConflictError,
    InvalidClaimError,
    NotFoundError,
    ValidationError,
)
from claimgate.service.passwords import CredentialHasher
from claimgate.storage.errors import DuplicateEmail
from claimgate.storage.models import Account, LoginGrant, Role, new_opaque_token

logger = get_logger(__name__)


class ClaimStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_claim_token(self, claim_token: str) -> Optional[Account]: ...

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

    def reissue_claim_token(
        self, account_id: str, claim_token: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def claim_account(
        self, claim_token: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def delete_temp_sessions_for_account(self, account_id: str) -> int: ...

    def create_login_grant(self, account_id: str, ttl: timedelta) -> LoginGrant: ...


class InvitationStatus(str, Enum):
    PENDING = "pending"
    EXPIRED = "expired"
    CLAIMED = "claimed"


@dataclass
class Invitation:
    account: Account
    claim_token: str
    claim_url: str
    expires_at: datetime
    reissued: bool = False


@dataclass
class ClaimResult:
    account: Account
    login_grant: LoginGrant
    revoked_temp_sessions: int = 0


class ClaimTokenManager:
    """Issue, validate and consume single-use account claim tokens.

    An invited account carries exactly one live claim token. Validation
    failures all surface as :class:`InvalidClaimError`; the precise reason
    (unknown, expired, already claimed) is only written to the log.
    Consumption relies on the store's conditional ``claim_account`` update, so
    concurrent claims on one token have a single winner.
    """

    def __init__(
        self, store: ClaimStore, hasher: CredentialHasher, settings: Settings
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _claim_ttl(self, ttl: Optional[timedelta]) -> timedelta:
        if ttl is None:
            return timedelta(hours=self.settings.claim_token_ttl_hours)
        if ttl <= timedelta(0):
            raise ValidationError("claim token lifetime must be positive")
        if ttl > timedelta(hours=self.settings.claim_token_max_ttl_hours):
            raise ValidationError(
                "claim token lifetime too long",
                detail={"max_hours": self.settings.claim_token_max_ttl_hours},
            )
        return ttl

    def issue_claim(
        self,
        email: str,
        name: str,
        *,
        role: Role = Role.USER,
        phone: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> Invitation:
        """Create an invited account, or re-open an unclaimed one with a fresh token."""
        lifetime = self._claim_ttl(ttl)
        token = new_opaque_token()
        expires_at = self._now() + lifetime

        existing = self.store.get_account_by_email(email)
        if existing and existing.claimed:
            raise ConflictError("account already exists", detail={"field": "email"})
        if existing:
            account = self.store.reissue_claim_token(existing.id, token, expires_at)
            if account is None:
                raise ConflictError("account already exists", detail={"field": "email"})
            logger.info("claim_token_reissued", account_id=account.id)
            reissued = True
        else:
            try:
                account = self.store.create_account(
                    email,
                    name,
                    role=role,
                    phone=phone,
                    claim_token=token,
                    claim_token_expires=expires_at,
                )
            except DuplicateEmail as exc:
                raise ConflictError("account already exists", detail={"field": "email"}) from exc
            logger.info("claim_token_issued", account_id=account.id, role=account.role.value)
            reissued = False
        return Invitation(
            account=account,
            claim_token=token,
            claim_url=self.settings.claim_url(token),
            expires_at=expires_at,
            reissued=reissued,
        )

    def validate_claim(self, token: Optional[str]) -> Account:
        if not token:
            logger.info("claim_rejected", reason="missing_token")
            raise InvalidClaimError()
        account = self.store.get_account_by_claim_token(token)
        if not account:
            logger.info("claim_rejected", reason="unknown_token")
            raise InvalidClaimError()
        if account.claimed:
            logger.info("claim_rejected", reason="already_claimed", account_id=account.id)
            raise InvalidClaimError()
        if not account.claim_is_open(self._now()):
            logger.info("claim_rejected", reason="expired", account_id=account.id)
            raise InvalidClaimError()
        return account

    async def consume_claim(self, token: Optional[str], password: str) -> ClaimResult:
        """Set the account password and clear its claim token, exactly once."""
        self.validate_claim(token)
        if len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters"
            )
        digest = await self.hasher.hash_async(password)
        account = self.store.claim_account(token, digest, self._now())
        if account is None:
            logger.warning("claim_rejected", reason="lost_concurrent_claim")
            raise InvalidClaimError()

        revoked = 0
        if self.settings.revoke_temp_sessions_on_claim:
            revoked = self.store.delete_temp_sessions_for_account(account.id)
        grant = self.store.create_login_grant(
            account.id, timedelta(seconds=self.settings.login_grant_ttl_seconds)
        )
        logger.info(
            "account_claimed", account_id=account.id, revoked_temp_sessions=revoked
        )
        return ClaimResult(account=account, login_grant=grant, revoked_temp_sessions=revoked)

    def open_invitation_for(self, account_id: str) -> Invitation:
        """The live claim token of an account, for a temporary session finishing its claim."""
        account = self.store.get_account(account_id)
        if not account or not account.claim_is_open(self._now()):
            logger.info("claim_token_lookup_rejected", account_id=account_id)
            raise InvalidClaimError()
        return Invitation(
            account=account,
            claim_token=account.claim_token,
            claim_url=self.settings.claim_url(account.claim_token),
            expires_at=account.claim_token_expires,
        )

    def invitation_status(
        self, *, email: Optional[str] = None, token: Optional[str] = None
    ) -> tuple[Account, InvitationStatus]:
        if not email and not token:
            raise ValidationError("email or token is required")
        account = (
            self.store.get_account_by_email(email)
            if email
            else self.store.get_account_by_claim_token(token)
        )
        if not account:
            raise NotFoundError("invitation not found")
        if account.claimed:
            return account, InvitationStatus.CLAIMED
        if not account.claim_is_open(self._now()):
            return account, InvitationStatus.EXPIRED
        return account, InvitationStatus.PENDING
