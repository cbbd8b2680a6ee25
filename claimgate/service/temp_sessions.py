from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from claimgate.config import Settings
from claimgate.logging import get_logger
from claimgate.service.claims import ClaimTokenManager
from claimgate.service.errors import ForbiddenError, NotFoundError
from claimgate.service.resolver import token_auth_permitted
from claimgate.storage.models import Account, TempSession

logger = get_logger(__name__)


class TempSessionStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def create_temp_session(self, account_id: str, ttl: timedelta) -> TempSession: ...

    def get_temp_session(self, token: str) -> Optional[TempSession]: ...

    def list_temp_sessions(self, account_id: str) -> List[TempSession]: ...

    def delete_temp_session(self, token: str) -> bool: ...

    def delete_temp_sessions_for_account(self, account_id: str) -> int: ...

    def delete_expired_temp_sessions(self, now: datetime) -> int: ...


@dataclass
class ActiveTempSession:
    account: Account
    session: TempSession


class TemporarySessionManager:
    """Short-lived, password-less sessions for invited accounts."""

    def __init__(
        self, store: TempSessionStore, claims: ClaimTokenManager, settings: Settings
    ) -> None:
        self.store = store
        self.claims = claims
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.temp_session_ttl_minutes)

    def create_from_claim(self, claim_token: Optional[str]) -> TempSession:
        """Continue without claiming: spawn a temp session, leaving the claim token usable."""
        account = self.claims.validate_claim(claim_token)
        return self._issue(account, source="claim_link")

    def create_for_account(self, account_id: str) -> TempSession:
        """Issue a temp session on behalf of a trusted backend caller."""
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return self._issue(account, source="service")

    def _issue(self, account: Account, *, source: str) -> TempSession:
        """New temp sessions go only to unclaimed, non-admin accounts."""
        if not token_auth_permitted(account):
            logger.warning(
                "temp_session_refused", reason="admin_account", account_id=account.id, source=source
            )
            raise ForbiddenError("admin accounts must claim their account first")
        if account.claimed:
            logger.warning(
                "temp_session_refused",
                reason="claimed_account",
                account_id=account.id,
                source=source,
            )
            raise ForbiddenError("account already claimed; sign in with a password")
        session = self.store.create_temp_session(account.id, self.ttl)
        logger.info(
            "temp_session_created",
            account_id=account.id,
            source=source,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    def validate(self, token: Optional[str]) -> Optional[ActiveTempSession]:
        if not token:
            return None
        session = self.store.get_temp_session(token)
        if not session:
            return None
        if session.expires_at <= self._now():
            self.store.delete_temp_session(token)
            logger.info("temp_session_expired", account_id=session.account_id)
            return None
        account = self.store.get_account(session.account_id)
        if not account:
            self.store.delete_temp_session(token)
            logger.warning("temp_session_orphaned", account_id=session.account_id)
            return None
        if not token_auth_permitted(account):
            self.store.delete_temp_session(token)
            logger.warning(
                "temp_session_rejected", reason="admin_account", account_id=account.id
            )
            return None
        return ActiveTempSession(account=account, session=session)

    def lookup(self, token: str) -> Optional[TempSession]:
        """Read a session record as stored, expired or not, for inspection."""
        return self.store.get_temp_session(token)

    def revoke(self, token: Optional[str]) -> None:
        if not token:
            return
        if self.store.delete_temp_session(token):
            logger.info("temp_session_revoked")

    def revoke_all_for_account(self, account_id: str) -> int:
        return self.store.delete_temp_sessions_for_account(account_id)

    def list_for_account(self, account_id: str) -> List[TempSession]:
        return self.store.list_temp_sessions(account_id)

    def is_expired(self, session: TempSession) -> bool:
        return session.expires_at <= self._now()

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_temp_sessions(self._now())
        if removed:
            logger.info("temp_sessions_purged", count=removed)
        return removed
