from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_ACCOUNT_FIELDS = ("email", "name", "phone", "role")
_SERVICE_CLIENT_FIELDS = (
    "name",
    "secret",
    "allowed_scopes",
    "is_active",
    "rate_limit",
    "ip_allowlist",
    "description",
    "last_used_at",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'USER',
        password_hash TEXT,
        claim_token TEXT UNIQUE,
        claim_token_expires TIMESTAMPTZ,
        claimed BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_claim_state CHECK (
            (claimed AND password_hash IS NOT NULL AND claim_token IS NULL)
            OR (NOT claimed AND password_hash IS NULL AND claim_token IS NOT NULL)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credential_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS temp_session (
        token TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS temp_session_account_idx ON temp_session (account_id)",
    """
    CREATE TABLE IF NOT EXISTS login_grant (
        token TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_client (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        secret_ciphertext TEXT NOT NULL,
        allowed_scopes TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        rate_limit INTEGER,
        ip_allowlist TEXT[] NOT NULL DEFAULT '{}',
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
)


class PostgresStore:
    """Postgres-backed account, session and service client store."""

    def __init__(self, dsn: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = self._build_cipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("service client encryption key is required")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("service_client_secret_decrypt_failed")
            raise RuntimeError("service client secret cannot be decrypted") from exc

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=Role(row.get("role") or Role.USER.value),
            phone=row.get("phone"),
            password_hash=row.get("password_hash"),
            claim_token=row.get("claim_token"),
            claim_token_expires=row.get("claim_token_expires"),
            claimed=bool(row.get("claimed", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _row_to_service_client(self, row: Dict[str, Any]) -> ServiceClient:
        return ServiceClient(
            id=row["id"],
            name=row["name"],
            secret=self._decrypt_secret(row["secret_ciphertext"]),
            allowed_scopes=list(row.get("allowed_scopes") or []),
            is_active=bool(row.get("is_active", True)),
            rate_limit=row.get("rate_limit"),
            ip_allowlist=list(row.get("ip_allowlist") or []),
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
        )

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
        if password_hash is not None:
            account = Account.new_claimed(email, name, password_hash, role=role, phone=phone)
        else:
            account = Account.new_invited(
                email, name, claim_token, claim_token_expires, role=role, phone=phone
            )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, name, phone, role, password_hash,
                        claim_token, claim_token_expires, claimed, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        account.email,
                        account.name,
                        account.phone,
                        account.role.value,
                        account.password_hash,
                        account.claim_token,
                        account.claim_token_expires,
                        account.claimed,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail(email)
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_claim_token(self, claim_token: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE claim_token = %s", (claim_token,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(
        self,
        *,
        role: Optional[Role] = None,
        email: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Account], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(Role(role).value)
        if email:
            clauses.append("email ILIKE %s")
            params.append(f"%{email}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM account {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM account {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_account(r) for r in rows], int(total_row["total"])

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        unknown = set(fields) - set(_ACCOUNT_FIELDS)
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        values = [
            value.value if isinstance(value, Role) else value for value in fields.values()
        ]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    [*values, account_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail(fields.get("email", ""))
        return self._row_to_account(row) if row else None

    def reissue_claim_token(
        self, account_id: str, claim_token: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET claim_token = %s, claim_token_expires = %s, updated_at = now()
                WHERE id = %s AND claimed = FALSE
                RETURNING *
                """,
                (claim_token, expires_at, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def claim_account(
        self, claim_token: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s,
                    claimed = TRUE,
                    claim_token = NULL,
                    claim_token_expires = NULL,
                    updated_at = %s
                WHERE claim_token = %s
                  AND claimed = FALSE
                  AND claim_token_expires > %s
                RETURNING *
                """,
                (password_hash, now, claim_token, now),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
        return cur.rowcount > 0

    # credential sessions
    def create_credential_session(
        self, account_id: str, ttl: timedelta, user_agent: Optional[str] = None
    ) -> CredentialSession:
        session = CredentialSession.new(account_id, ttl, user_agent=user_agent)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credential_session (id, account_id, created_at, expires_at, user_agent)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise MissingAccount(account_id)
        return session

    def get_credential_session(self, session_id: str) -> Optional[CredentialSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return CredentialSession(
            id=row["id"],
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
        )

    def delete_credential_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM credential_session WHERE id = %s", (session_id,)
            )
        return cur.rowcount > 0

    def delete_credential_sessions_for_account(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM credential_session WHERE account_id = %s", (account_id,)
            )
        return cur.rowcount

    def delete_expired_credential_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM credential_session WHERE expires_at <= %s", (now,)
            )
        return cur.rowcount

    # temporary sessions
    @staticmethod
    def _row_to_temp_session(row: Dict[str, Any]) -> TempSession:
        return TempSession(
            token=row["token"],
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def create_temp_session(self, account_id: str, ttl: timedelta) -> TempSession:
        session = TempSession.new(account_id, ttl)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO temp_session (token, account_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (session.token, session.account_id, session.created_at, session.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise MissingAccount(account_id)
        return session

    def get_temp_session(self, token: str) -> Optional[TempSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM temp_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_temp_session(row) if row else None

    def list_temp_sessions(self, account_id: str) -> List[TempSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM temp_session WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [self._row_to_temp_session(r) for r in rows]

    def delete_temp_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM temp_session WHERE token = %s", (token,))
        return cur.rowcount > 0

    def delete_temp_sessions_for_account(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM temp_session WHERE account_id = %s", (account_id,)
            )
        return cur.rowcount

    def delete_expired_temp_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM temp_session WHERE expires_at <= %s", (now,))
        return cur.rowcount

    # login grants
    def create_login_grant(self, account_id: str, ttl: timedelta) -> LoginGrant:
        grant = LoginGrant.new(account_id, ttl)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO login_grant (token, account_id, expires_at) VALUES (%s, %s, %s)",
                    (grant.token, grant.account_id, grant.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise MissingAccount(account_id)
        return grant

    def pop_login_grant(self, token: str) -> Optional[LoginGrant]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM login_grant WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        if not row:
            return None
        return LoginGrant(
            token=row["token"], account_id=str(row["account_id"]), expires_at=row["expires_at"]
        )

    def delete_expired_login_grants(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_grant WHERE expires_at <= %s", (now,))
        return cur.rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO service_client (
                        id, name, secret_ciphertext, allowed_scopes, rate_limit, ip_allowlist, description
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        client_id,
                        name,
                        self._encrypt_secret(secret),
                        list(allowed_scopes or []),
                        rate_limit,
                        list(ip_allowlist or []),
                        description,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "service client already exists", {"client_id": client_id}
            )
        return self._row_to_service_client(row)

    def get_service_client(self, client_id: str) -> Optional[ServiceClient]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM service_client WHERE id = %s", (client_id,)
            ).fetchone()
        return self._row_to_service_client(row) if row else None

    def list_service_clients(self) -> List[ServiceClient]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM service_client ORDER BY created_at"
            ).fetchall()
        return [self._row_to_service_client(r) for r in rows]

    def update_service_client(self, client_id: str, **fields) -> Optional[ServiceClient]:
        unknown = set(fields) - set(_SERVICE_CLIENT_FIELDS)
        if unknown:
            raise ValueError(f"unsupported service client fields: {sorted(unknown)}")
        if not fields:
            return self.get_service_client(client_id)
        columns: List[str] = []
        values: List[Any] = []
        for name, value in fields.items():
            if name == "secret":
                columns.append("secret_ciphertext = %s")
                values.append(self._encrypt_secret(value))
            else:
                columns.append(f"{name} = %s")
                values.append(list(value) if isinstance(value, (list, tuple)) else value)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE service_client SET {', '.join(columns)} WHERE id = %s RETURNING *",
                [*values, client_id],
            ).fetchone()
        return self._row_to_service_client(row) if row else None
