from __future__ import annotations

import hashlib
import hmac
import math
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from ipaddress import ip_address, ip_network
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from claimgate.logging import get_logger
from claimgate.service.errors import ForbiddenError, ServiceAuthError
from claimgate.service.service_tokens import ServiceTokenAuthority
from claimgate.storage.models import ServiceClient

logger = get_logger(__name__)

HEADER_CLIENT_ID = "X-Client-ID"
HEADER_TIMESTAMP = "X-Auth-Timestamp"
HEADER_NONCE = "X-Auth-Nonce"
HEADER_HASH = "X-Auth-Hash"

REASON_MISSING_HEADERS = "missing enhanced authentication headers"
REASON_BAD_TIMESTAMP = "invalid request timestamp"
REASON_UNKNOWN_CLIENT = "unknown or inactive client"
REASON_ADDRESS = "client address not permitted"
REASON_WINDOW = "request timestamp outside allowed window"
REASON_HASH = "invalid authentication hash"
REASON_REPLAY = "replayed nonce"


def compute_auth_hash(secret: str, timestamp: str, nonce: str, method: str, path: str) -> str:
    """SHA-256 hex digest binding the shared secret to one request."""
    message = f"{secret}:{timestamp}:{nonce}:{method.upper()}:{path}"
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EnhancedAuthHeaders:
    client_id: str
    timestamp: str
    nonce: str
    auth_hash: str

    @classmethod
    def from_mapping(cls, headers: Mapping[str, str]) -> Optional["EnhancedAuthHeaders"]:
        """Pick the four proof headers; ``None`` unless all of them are present."""
        lowered = {k.lower(): v for k, v in headers.items()}
        values = [
            lowered.get(name.lower())
            for name in (HEADER_CLIENT_ID, HEADER_TIMESTAMP, HEADER_NONCE, HEADER_HASH)
        ]
        if not all(values):
            return None
        return cls(*values)


class ServiceClientStore(Protocol):
    def get_service_client(self, client_id: str) -> Optional[ServiceClient]: ...

    def update_service_client(self, client_id: str, **fields) -> Optional[ServiceClient]: ...


class NonceCache(Protocol):
    async def remember_nonce(self, client_id: str, nonce: str, ttl_seconds: int) -> bool: ...


class LocalNonceCache:
    """Process-local replay cache used when Redis is unavailable."""

    def __init__(self) -> None:
        self._seen: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    async def remember_nonce(self, client_id: str, nonce: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        key = (client_id, nonce)
        with self._lock:
            expired = [k for k, until in self._seen.items() if until <= now]
            for stale in expired:
                self._seen.pop(stale, None)
            if key in self._seen:
                return False
            self._seen[key] = now + max(1, ttl_seconds)
            return True


@dataclass(frozen=True)
class ServicePrincipal:
    issuer: str
    scopes: Tuple[str, ...]
    auth_method: str = "token"
    client_id: Optional[str] = None


class EnhancedServiceAuth:
    """Proof-of-possession check layered on top of a verified service token.

    A caller proves it holds the client's shared secret by hashing it with a
    millisecond timestamp, a random nonce, the HTTP method and the request path.
    Requests more than ``window_seconds`` away from server time are refused in
    both directions, and each nonce is remembered per client until its
    timestamp leaves the window so a captured request cannot be replayed.
    """

    def __init__(
        self,
        store: ServiceClientStore,
        tokens: ServiceTokenAuthority,
        *,
        window_seconds: int = 300,
        nonce_cache: Optional[NonceCache] = None,
        enforce_nonce_uniqueness: bool = True,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.window_ms = window_seconds * 1000
        self.nonce_cache: NonceCache = nonce_cache or LocalNonceCache()
        self.enforce_nonce_uniqueness = enforce_nonce_uniqueness

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    def _reject(self, reason: str, **context) -> ServiceAuthError:
        logger.warning("enhanced_auth_rejected", reason=reason, **context)
        return ServiceAuthError(reason)

    @staticmethod
    def _address_allowed(client_ip: Optional[str], allowlist: List[str]) -> bool:
        if not client_ip:
            return False
        try:
            addr = ip_address(client_ip)
        except ValueError:
            return False
        for entry in allowlist:
            try:
                if addr in ip_network(entry, strict=False):
                    return True
            except ValueError:
                logger.warning("ip_allowlist_entry_invalid", entry=entry)
        return False

    async def verify_request(
        self,
        headers: Optional[EnhancedAuthHeaders],
        *,
        method: str,
        path: str,
        client_ip: Optional[str] = None,
    ) -> ServiceClient:
        if headers is None:
            raise self._reject(REASON_MISSING_HEADERS)
        try:
            timestamp_ms = int(headers.timestamp)
        except ValueError:
            raise self._reject(REASON_BAD_TIMESTAMP, client_id=headers.client_id)

        client = self.store.get_service_client(headers.client_id)
        if not client or not client.is_active:
            raise self._reject(
                REASON_UNKNOWN_CLIENT,
                client_id=headers.client_id,
                known=client is not None,
            )

        now_ms = self._now_ms()
        if abs(now_ms - timestamp_ms) > self.window_ms:
            raise self._reject(
                REASON_WINDOW, client_id=client.id, skew_ms=now_ms - timestamp_ms
            )

        expected = compute_auth_hash(client.secret, headers.timestamp, headers.nonce, method, path)
        if not hmac.compare_digest(expected, headers.auth_hash.lower()):
            raise self._reject(REASON_HASH, client_id=client.id, method=method, path=path)

        if client.ip_allowlist and not self._address_allowed(client_ip, client.ip_allowlist):
            raise self._reject(REASON_ADDRESS, client_id=client.id, client_ip=client_ip)

        if self.enforce_nonce_uniqueness:
            remaining_ms = timestamp_ms + self.window_ms - now_ms
            ttl_seconds = max(1, math.ceil(remaining_ms / 1000))
            fresh = await self.nonce_cache.remember_nonce(client.id, headers.nonce, ttl_seconds)
            if not fresh:
                raise self._reject(REASON_REPLAY, client_id=client.id)

        self.store.update_service_client(client.id, last_used_at=datetime.now(timezone.utc))
        return client

    async def authorize(
        self,
        bearer_token: Optional[str],
        headers: Optional[EnhancedAuthHeaders],
        *,
        method: str,
        path: str,
        required_scope: str,
        client_ip: Optional[str] = None,
    ) -> ServicePrincipal:
        """Accept only when token, proof, token scope and client scope all pass."""
        claims = self.tokens.verify(bearer_token)
        client = await self.verify_request(
            headers, method=method, path=path, client_ip=client_ip
        )
        if required_scope not in claims.scopes:
            logger.warning(
                "enhanced_auth_scope_denied",
                source="token",
                client_id=client.id,
                required_scope=required_scope,
            )
            raise ForbiddenError("insufficient token scope", detail={"required_scope": required_scope})
        if required_scope not in client.allowed_scopes:
            logger.warning(
                "enhanced_auth_scope_denied",
                source="client",
                client_id=client.id,
                required_scope=required_scope,
            )
            raise ForbiddenError("insufficient client scope", detail={"required_scope": required_scope})
        return ServicePrincipal(
            issuer=claims.issuer,
            scopes=claims.scopes,
            auth_method="enhanced",
            client_id=client.id,
        )


class ServiceAuthClient:
    """Caller-side helper producing the enhanced auth headers for one request."""

    def __init__(self, client_id: str, secret: str) -> None:
        self.client_id = client_id
        self.secret = secret

    def generate_auth_request(
        self,
        method: str,
        path: str,
        *,
        timestamp_ms: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> Dict[str, str]:
        timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
        nonce = nonce or secrets.token_hex(16)
        return {
            "timestamp": timestamp,
            "nonce": nonce,
            "hash": compute_auth_hash(self.secret, timestamp, nonce, method, path),
        }

    def create_headers(
        self, method: str, path: str, service_token: Optional[str] = None
    ) -> Dict[str, str]:
        proof = self.generate_auth_request(method, path)
        headers = {
            HEADER_CLIENT_ID: self.client_id,
            HEADER_TIMESTAMP: proof["timestamp"],
            HEADER_NONCE: proof["nonce"],
            HEADER_HASH: proof["hash"],
        }
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"
        return headers
