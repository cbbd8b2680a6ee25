from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable, Optional, Tuple, Union

from claimgate.logging import get_logger
from claimgate.service.errors import ForbiddenError, ServiceAuthError, ValidationError

logger = get_logger(__name__)

SCOPE_USER_READ = "user:read"
SCOPE_USER_CREATE = "user:create"
SCOPE_USER_UPDATE = "user:update"
SCOPE_USER_DELETE = "user:delete"
SCOPE_INVITE_SEND = "invite:send"
SCOPE_SESSION_CREATE = "session:create"

SERVICE_SCOPES: Tuple[str, ...] = (
    SCOPE_USER_READ,
    SCOPE_USER_CREATE,
    SCOPE_USER_UPDATE,
    SCOPE_USER_DELETE,
    SCOPE_INVITE_SEND,
    SCOPE_SESSION_CREATE,
)

_EXPIRES_IN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expires_in(value: str) -> timedelta:
    """Parse lifetimes written as ``<int><s|m|h|d>``, e.g. ``"15m"`` or ``"24h"``."""
    match = _EXPIRES_IN.match(value or "")
    if not match:
        raise ValueError("expiration must look like 30s, 15m, 1h or 7d")
    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise ValueError("expiration must be positive")
    return timedelta(seconds=seconds)


def unknown_scopes(scopes: Iterable[str]) -> list[str]:
    return [scope for scope in scopes if scope not in SERVICE_SCOPES]


class TokenFailure(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"
    AUDIENCE = "audience"


_FAILURE_REASONS = {
    TokenFailure.INVALID: "invalid token",
    TokenFailure.EXPIRED: "token expired",
    TokenFailure.AUDIENCE: "invalid audience",
}


class ServiceTokenError(ServiceAuthError):
    def __init__(self, failure: TokenFailure) -> None:
        super().__init__(_FAILURE_REASONS[failure])
        self.failure = failure


@dataclass(frozen=True)
class ServiceTokenClaims:
    issuer: str
    audience: str
    scopes: Tuple[str, ...]
    issued_at: int
    expires_at: int


class ServiceTokenAuthority:
    """Stateless HS256 bearer tokens for backend-to-backend calls.

    Tokens are never stored and cannot be revoked; short lifetimes (capped by
    ``max_ttl``) bound the exposure of a leaked token.
    """

    def __init__(
        self,
        secret: str,
        *,
        audience: str = "client-portal",
        default_ttl: timedelta = timedelta(hours=1),
        max_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        if not secret:
            raise ValueError("service token secret must not be empty")
        self._secret = secret.encode()
        self.audience = audience
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _resolve_ttl(self, ttl: Union[timedelta, str, None]) -> timedelta:
        if ttl is None:
            return self.default_ttl
        if isinstance(ttl, str):
            try:
                ttl = parse_expires_in(ttl)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if ttl <= timedelta(0):
            raise ValidationError("token lifetime must be positive")
        if ttl > self.max_ttl:
            raise ValidationError(
                "token lifetime too long",
                detail={"max_seconds": int(self.max_ttl.total_seconds())},
            )
        return ttl

    def issue(
        self,
        issuer: str,
        scopes: Iterable[str],
        ttl: Union[timedelta, str, None] = None,
    ) -> str:
        scope_list = list(dict.fromkeys(scopes))
        invalid = unknown_scopes(scope_list)
        if invalid:
            raise ValidationError("unknown scopes requested", detail={"invalid_scopes": invalid})
        if not issuer:
            raise ValidationError("issuer is required")
        lifetime = self._resolve_ttl(ttl)
        issued_at = int(time.time())
        payload = {
            "iss": issuer,
            "aud": self.audience,
            "scope": scope_list,
            "iat": issued_at,
            "exp": issued_at + int(lifetime.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        logger.info("service_token_issued", issuer=issuer, scopes=scope_list, exp=payload["exp"])
        return f"{signing_input}.{self._sign(signing_input)}"

    def _reject(self, failure: TokenFailure, detail: str, **context: Any) -> ServiceTokenError:
        logger.warning("service_token_rejected", failure=failure.value, detail=detail, **context)
        return ServiceTokenError(failure)

    def verify(self, token: Optional[str]) -> ServiceTokenClaims:
        """Return the token's claims or raise :class:`ServiceTokenError`.

        Checks run in order: structure and algorithm, signature, required
        fields, audience, expiry. Any one failing is enough to reject.
        """
        if not token:
            raise self._reject(TokenFailure.INVALID, "missing")
        parts = token.split(".")
        if len(parts) != 3:
            raise self._reject(TokenFailure.INVALID, "segments")
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise self._reject(TokenFailure.INVALID, "header_decode")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise self._reject(TokenFailure.INVALID, "algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise self._reject(TokenFailure.INVALID, "signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise self._reject(TokenFailure.INVALID, "payload_decode")
        claims = self._structured_claims(payload)
        if claims is None:
            raise self._reject(TokenFailure.INVALID, "structure")
        if claims.audience != self.audience:
            raise self._reject(TokenFailure.AUDIENCE, "audience", issuer=claims.issuer)
        if claims.expires_at <= time.time():
            raise self._reject(TokenFailure.EXPIRED, "expired", issuer=claims.issuer)
        return claims

    @staticmethod
    def _structured_claims(payload: Any) -> Optional[ServiceTokenClaims]:
        if not isinstance(payload, dict):
            return None
        issuer = payload.get("iss")
        audience = payload.get("aud")
        scopes = payload.get("scope")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(issuer, str) or not issuer:
            return None
        if not isinstance(audience, str):
            return None
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            return None
        for value in (iat, exp):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
        return ServiceTokenClaims(
            issuer=issuer,
            audience=audience,
            scopes=tuple(scopes),
            issued_at=int(iat),
            expires_at=int(exp),
        )

    @staticmethod
    def has_scope(claims: ServiceTokenClaims, scope: str) -> bool:
        return scope in claims.scopes

    def authorize(self, token: Optional[str], required_scope: str) -> ServiceTokenClaims:
        claims = self.verify(token)
        if not self.has_scope(claims, required_scope):
            logger.warning(
                "service_scope_denied",
                issuer=claims.issuer,
                required_scope=required_scope,
                granted=list(claims.scopes),
            )
            raise ForbiddenError(
                "insufficient scope", detail={"required_scope": required_scope}
            )
        return claims

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
