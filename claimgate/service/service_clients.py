from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from ipaddress import ip_network
from typing import Iterable, List, Optional, Protocol, Tuple

from claimgate.logging import get_logger
from claimgate.service.errors import NotFoundError, ServiceAuthError, ValidationError
from claimgate.service.service_tokens import (
    SERVICE_SCOPES,
    ServiceTokenAuthority,
    parse_expires_in,
    unknown_scopes,
)
from claimgate.storage.models import ServiceClient

logger = get_logger(__name__)


class ServiceClientAdminStore(Protocol):
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
    ) -> ServiceClient: ...

    def get_service_client(self, client_id: str) -> Optional[ServiceClient]: ...

    def list_service_clients(self) -> List[ServiceClient]: ...

    def update_service_client(self, client_id: str, **fields) -> Optional[ServiceClient]: ...


@dataclass
class TokenExchange:
    access_token: str
    expires_in: int
    scopes: Tuple[str, ...]
    token_type: str = "Bearer"


def _new_secret() -> str:
    return secrets.token_urlsafe(48)


class ServiceClientManager:
    """Registration and lifecycle of backend callers, plus the credential-for-token exchange."""

    def __init__(self, store: ServiceClientAdminStore, tokens: ServiceTokenAuthority) -> None:
        self.store = store
        self.tokens = tokens

    def _require(self, client_id: str) -> ServiceClient:
        client = self.store.get_service_client(client_id)
        if not client:
            raise NotFoundError("service client not found", detail={"client_id": client_id})
        return client

    @staticmethod
    def _check_scopes(scopes: Iterable[str]) -> List[str]:
        scope_list = list(dict.fromkeys(scopes))
        invalid = unknown_scopes(scope_list)
        if invalid:
            raise ValidationError("unknown scopes", detail={"invalid_scopes": invalid})
        return scope_list

    @staticmethod
    def _check_network(entry: str) -> str:
        try:
            return str(ip_network(entry.strip(), strict=False))
        except ValueError as exc:
            raise ValidationError("invalid IP address or network", detail={"entry": entry}) from exc

    def create_client(
        self,
        name: str,
        allowed_scopes: Iterable[str],
        *,
        client_id: Optional[str] = None,
        secret: Optional[str] = None,
        description: Optional[str] = None,
        rate_limit: Optional[int] = None,
        ip_allowlist: Optional[Iterable[str]] = None,
    ) -> ServiceClient:
        scopes = self._check_scopes(allowed_scopes)
        networks = [self._check_network(e) for e in (ip_allowlist or [])]
        client = self.store.create_service_client(
            client_id or f"svc_{secrets.token_hex(8)}",
            name,
            secret or _new_secret(),
            allowed_scopes=scopes,
            rate_limit=rate_limit,
            ip_allowlist=networks,
            description=description,
        )
        logger.info("service_client_created", client_id=client.id, scopes=scopes)
        return client

    def ensure_client(
        self, client_id: str, name: str, secret: str, allowed_scopes: Iterable[str]
    ) -> ServiceClient:
        """Create the client when absent; an existing registration is left untouched."""
        existing = self.store.get_service_client(client_id)
        if existing:
            return existing
        return self.create_client(name, allowed_scopes, client_id=client_id, secret=secret)

    def _update(self, client_id: str, **fields) -> ServiceClient:
        self._require(client_id)
        updated = self.store.update_service_client(client_id, **fields)
        if not updated:
            raise NotFoundError("service client not found", detail={"client_id": client_id})
        return updated

    def disable(self, client_id: str) -> ServiceClient:
        client = self._update(client_id, is_active=False)
        logger.info("service_client_disabled", client_id=client_id)
        return client

    def enable(self, client_id: str) -> ServiceClient:
        client = self._update(client_id, is_active=True)
        logger.info("service_client_enabled", client_id=client_id)
        return client

    def rotate_secret(self, client_id: str) -> ServiceClient:
        client = self._update(client_id, secret=_new_secret())
        logger.info("service_client_secret_rotated", client_id=client_id)
        return client

    def update_scopes(self, client_id: str, scopes: Iterable[str]) -> ServiceClient:
        return self._update(client_id, allowed_scopes=self._check_scopes(scopes))

    def add_allowed_ip(self, client_id: str, entry: str) -> ServiceClient:
        client = self._require(client_id)
        network = self._check_network(entry)
        if network in client.ip_allowlist:
            return client
        return self._update(client_id, ip_allowlist=[*client.ip_allowlist, network])

    def remove_allowed_ip(self, client_id: str, entry: str) -> ServiceClient:
        client = self._require(client_id)
        network = self._check_network(entry)
        return self._update(
            client_id, ip_allowlist=[e for e in client.ip_allowlist if e != network]
        )

    def list_clients(self) -> List[ServiceClient]:
        return self.store.list_service_clients()

    def exchange_credentials(
        self,
        client_id: str,
        client_secret: str,
        scopes: Iterable[str],
        expires_in: Optional[str] = None,
    ) -> TokenExchange:
        client = self.store.get_service_client(client_id)
        if (
            not client
            or not client.is_active
            or not hmac.compare_digest(client.secret.encode(), client_secret.encode())
        ):
            logger.warning(
                "service_token_exchange_rejected",
                client_id=client_id,
                known=client is not None,
            )
            raise ServiceAuthError("invalid client credentials")

        requested = list(dict.fromkeys(scopes))
        invalid = [
            s for s in requested if s not in SERVICE_SCOPES or s not in client.allowed_scopes
        ]
        if not requested or invalid:
            raise ValidationError(
                "invalid scopes requested",
                detail={"invalid_scopes": invalid, "allowed_scopes": client.allowed_scopes},
            )
        if expires_in:
            try:
                lifetime = parse_expires_in(expires_in)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        else:
            lifetime = self.tokens.default_ttl
        token = self.tokens.issue(client.id, requested, lifetime)
        return TokenExchange(
            access_token=token,
            expires_in=int(lifetime.total_seconds()),
            scopes=tuple(requested),
        )
