from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, TypeVar

from claimgate.logging import get_logger
from claimgate.storage.errors import ConstraintViolation, DuplicateEmail, MissingAccount
from claimgate.storage.models import (
    Account,
    CredentialSession,
    LoginGrant,
    Role,
    ServiceClient,
    TempSession,
    utcnow,
)

T = TypeVar("T")

_ACCOUNT_FIELDS = {"email", "name", "phone", "role"}
_SERVICE_CLIENT_FIELDS = {
    "name",
    "secret",
    "allowed_scopes",
    "is_active",
    "rate_limit",
    "ip_allowlist",
    "description",
    "last_used_at",
}


def _clone(obj: T) -> T:
    return copy.deepcopy(obj)


class MemoryStore:
    """In-process store used for tests and single-node development.

    Every method takes ``_data_lock`` so the conditional claim and the
    single-use grant pop are atomic with respect to concurrent callers.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credential_sessions: Dict[str, CredentialSession] = {}
        self.temp_sessions: Dict[str, TempSession] = {}
        self.login_grants: Dict[str, LoginGrant] = {}
        self.service_clients: Dict[str, ServiceClient] = {}
        self._data_lock = threading.RLock()

    # accounts
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
    ) -> Account:
        if (password_hash is None) == (claim_token is None):
            raise ValueError("account needs exactly one of password_hash or claim_token")
        with self._data_lock:
            if self._find_by_email(email):
                raise DuplicateEmail(email)
            if password_hash is not None:
                account = Account.new_claimed(
                    email, name, password_hash, role=role, phone=phone
                )
            else:
                account = Account.new_invited(
                    email, name, claim_token, claim_token_expires, role=role, phone=phone
                )
            self.accounts[account.id] = account
            return _clone(account)

    def _find_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return _clone(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email)
            return _clone(account) if account else None

    def get_account_by_claim_token(self, claim_token: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.claim_token == claim_token),
                None,
            )
            return _clone(account) if account else None

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        email: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Account], int]:
        with self._data_lock:
            results = [
                a
                for a in self.accounts.values()
                if (role is None or a.role == role)
                and (not email or email.lower() in a.email)
            ]
            results.sort(key=lambda a: a.created_at, reverse=True)
            page = results[offset : offset + limit]
            return [_clone(a) for a in page], len(results)

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            new_email = fields.get("email")
            if new_email and new_email != account.email and self._find_by_email(new_email):
                raise DuplicateEmail(new_email)
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            return _clone(account)

    def reissue_claim_token(
        self, account_id: str, claim_token: str, expires_at: datetime
    ) -> Optional[Account]:
        """Point an unclaimed account at a fresh claim token; ``None`` once claimed."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.claimed:
                return None
            account.claim_token = claim_token
            account.claim_token_expires = expires_at
            account.updated_at = utcnow()
            return _clone(account)

    def claim_account(
        self, claim_token: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        """Conditional update: only an unclaimed account with an unexpired matching token wins."""
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.claim_token == claim_token),
                None,
            )
            if not account or not account.claim_is_open(now):
                return None
            account.claim(password_hash, now)
            return _clone(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            for table in (self.credential_sessions, self.temp_sessions, self.login_grants):
                for key, record in list(table.items()):
                    if record.account_id == account_id:
                        table.pop(key, None)
            return True

    # credential sessions
    def create_credential_session(
        self, account_id: str, ttl: timedelta, user_agent: Optional[str] = None
    ) -> CredentialSession:
        with self._data_lock:
            if account_id not in self.accounts:
                raise MissingAccount(account_id)
            session = CredentialSession.new(account_id, ttl, user_agent=user_agent)
            self.credential_sessions[session.id] = session
            return _clone(session)

    def get_credential_session(self, session_id: str) -> Optional[CredentialSession]:
        with self._data_lock:
            session = self.credential_sessions.get(session_id)
            return _clone(session) if session else None

    def delete_credential_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.credential_sessions.pop(session_id, None) is not None

    def delete_credential_sessions_for_account(self, account_id: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.credential_sessions.items()
                if sess.account_id == account_id
            ]
            for sid in stale:
                self.credential_sessions.pop(sid, None)
            return len(stale)

    def delete_expired_credential_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid for sid, sess in self.credential_sessions.items() if sess.expires_at <= now
            ]
            for sid in stale:
                self.credential_sessions.pop(sid, None)
            return len(stale)

    # temporary sessions
    def create_temp_session(self, account_id: str, ttl: timedelta) -> TempSession:
        with self._data_lock:
            if account_id not in self.accounts:
                raise MissingAccount(account_id)
            session = TempSession.new(account_id, ttl)
            self.temp_sessions[session.token] = session
            return _clone(session)

    def get_temp_session(self, token: str) -> Optional[TempSession]:
        with self._data_lock:
            session = self.temp_sessions.get(token)
            return _clone(session) if session else None

    def list_temp_sessions(self, account_id: str) -> List[TempSession]:
        with self._data_lock:
            sessions = [
                s for s in self.temp_sessions.values() if s.account_id == account_id
            ]
            sessions.sort(key=lambda s: s.created_at, reverse=True)
            return [_clone(s) for s in sessions]

    def delete_temp_session(self, token: str) -> bool:
        with self._data_lock:
            return self.temp_sessions.pop(token, None) is not None

    def delete_temp_sessions_for_account(self, account_id: str) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.temp_sessions.items()
                if sess.account_id == account_id
            ]
            for token in stale:
                self.temp_sessions.pop(token, None)
            return len(stale)

    def delete_expired_temp_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token for token, sess in self.temp_sessions.items() if sess.expires_at <= now
            ]
            for token in stale:
                self.temp_sessions.pop(token, None)
            return len(stale)

    # login grants
    def create_login_grant(self, account_id: str, ttl: timedelta) -> LoginGrant:
        with self._data_lock:
            if account_id not in self.accounts:
                raise MissingAccount(account_id)
            grant = LoginGrant.new(account_id, ttl)
            self.login_grants[grant.token] = grant
            return _clone(grant)

    def pop_login_grant(self, token: str) -> Optional[LoginGrant]:
        with self._data_lock:
            return self.login_grants.pop(token, None)

    def delete_expired_login_grants(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token for token, grant in self.login_grants.items() if grant.expires_at <= now
            ]
            for token in stale:
                self.login_grants.pop(token, None)
            return len(stale)

    # service clients
    def create_service_client(
        self,
        client_id: str,
        name: str,
        secret: str,
        *,
        allowed_scopes: Optional[List[str]] = None,
        rate_limit: Optional[int] = None,
        ip_allowlist: Optional[List[str]] = None,
        description: Optional[str] = None,
    ) -> ServiceClient:
        with self._data_lock:
            if client_id in self.service_clients:
                raise ConstraintViolation(
                    "service client already exists", {"client_id": client_id}
                )
            client = ServiceClient(
                id=client_id,
                name=name,
                secret=secret,
                allowed_scopes=list(allowed_scopes or []),
                rate_limit=rate_limit,
                ip_allowlist=list(ip_allowlist or []),
                description=description,
            )
            self.service_clients[client_id] = client
            return _clone(client)

    def get_service_client(self, client_id: str) -> Optional[ServiceClient]:
        with self._data_lock:
            client = self.service_clients.get(client_id)
            return _clone(client) if client else None

    def list_service_clients(self) -> List[ServiceClient]:
        with self._data_lock:
            clients = sorted(self.service_clients.values(), key=lambda c: c.created_at)
            return [_clone(c) for c in clients]

    def update_service_client(self, client_id: str, **fields) -> Optional[ServiceClient]:
        unknown = set(fields) - _SERVICE_CLIENT_FIELDS
        if unknown:
            raise ValueError(f"unsupported service client fields: {sorted(unknown)}")
        with self._data_lock:
            client = self.service_clients.get(client_id)
            if not client:
                return None
            for key, value in fields.items():
                setattr(client, key, copy.deepcopy(value))
            return _clone(client)
