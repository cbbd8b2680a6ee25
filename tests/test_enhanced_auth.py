"""Unit tests for proof-of-possession service authentication."""

import time
import uuid

import pytest

from claimgate.service.enhanced_auth import (
    HEADER_CLIENT_ID,
    HEADER_HASH,
    HEADER_NONCE,
    HEADER_TIMESTAMP,
    EnhancedAuthHeaders,
    EnhancedServiceAuth,
    LocalNonceCache,
    ServiceAuthClient,
    compute_auth_hash,
)
from claimgate.service.errors import ForbiddenError, ServiceAuthError
from claimgate.service.service_tokens import (
    SCOPE_INVITE_SEND,
    SCOPE_USER_CREATE,
    SCOPE_USER_READ,
    ServiceTokenAuthority,
)

SECRET = "shared-client-secret"
PATH = "/v1/service/secure/users"


@pytest.fixture
def tokens():
    return ServiceTokenAuthority("signing-secret")


@pytest.fixture
def client_record(store):
    return store.create_service_client(
        "billing", "Billing", SECRET, allowed_scopes=[SCOPE_USER_READ, SCOPE_INVITE_SEND]
    )


@pytest.fixture
def enhanced(store, tokens, client_record):
    return EnhancedServiceAuth(store, tokens, window_seconds=300, nonce_cache=LocalNonceCache())


def _headers(client_id="billing", secret=SECRET, method="GET", path=PATH, **overrides):
    proof = ServiceAuthClient(client_id, secret).generate_auth_request(
        method,
        path,
        timestamp_ms=overrides.pop("timestamp_ms", None),
        nonce=overrides.pop("nonce", None),
    )
    return EnhancedAuthHeaders(
        client_id=client_id,
        timestamp=proof["timestamp"],
        nonce=proof["nonce"],
        auth_hash=proof["hash"],
    )


def _now_ms():
    return int(time.time() * 1000)


class TestAuthHash:
    def test_deterministic(self):
        first = compute_auth_hash(SECRET, "1700000000000", "abc", "GET", PATH)
        second = compute_auth_hash(SECRET, "1700000000000", "abc", "GET", PATH)

        assert first == second
        assert len(first) == 64

    def test_method_and_path_bound(self):
        base = compute_auth_hash(SECRET, "1700000000000", "abc", "GET", PATH)

        assert compute_auth_hash(SECRET, "1700000000000", "abc", "POST", PATH) != base
        assert compute_auth_hash(SECRET, "1700000000000", "abc", "GET", "/v1/service/users") != base

    def test_method_case_normalized(self):
        assert compute_auth_hash(SECRET, "1", "n", "get", PATH) == compute_auth_hash(
            SECRET, "1", "n", "GET", PATH
        )

    def test_client_helper_headers(self):
        headers = ServiceAuthClient("billing", SECRET).create_headers("GET", PATH, "tok")

        assert headers["Authorization"] == "Bearer tok"
        assert headers[HEADER_CLIENT_ID] == "billing"
        assert len(headers[HEADER_NONCE]) == 32
        assert headers[HEADER_HASH] == compute_auth_hash(
            SECRET, headers[HEADER_TIMESTAMP], headers[HEADER_NONCE], "GET", PATH
        )

    def test_headers_from_mapping(self):
        raw = ServiceAuthClient("billing", SECRET).create_headers("GET", PATH)
        lowered = {k.lower(): v for k, v in raw.items()}

        assert EnhancedAuthHeaders.from_mapping(lowered).client_id == "billing"
        lowered.pop(HEADER_NONCE.lower())
        assert EnhancedAuthHeaders.from_mapping(lowered) is None


class TestVerifyRequest:
    async def test_valid_proof_accepted(self, enhanced, store):
        client = await enhanced.verify_request(_headers(), method="GET", path=PATH)

        assert client.id == "billing"
        assert store.get_service_client("billing").last_used_at is not None

    async def test_missing_headers(self, enhanced):
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(None, method="GET", path=PATH)
        assert exc_info.value.reason == "missing enhanced authentication headers"

    async def test_unknown_client(self, enhanced):
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(_headers(client_id="ghost"), method="GET", path=PATH)
        assert exc_info.value.reason == "unknown or inactive client"

    async def test_inactive_client(self, enhanced, store):
        store.update_service_client("billing", is_active=False)

        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(_headers(), method="GET", path=PATH)
        assert exc_info.value.reason == "unknown or inactive client"

    @pytest.mark.parametrize("skew_ms", [-301_000, 301_000])
    async def test_timestamp_outside_window_either_direction(self, enhanced, skew_ms):
        headers = _headers(timestamp_ms=_now_ms() + skew_ms)

        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(headers, method="GET", path=PATH)
        assert exc_info.value.reason == "request timestamp outside allowed window"

    @pytest.mark.parametrize("skew_ms", [-290_000, 290_000])
    async def test_timestamp_inside_window(self, enhanced, skew_ms):
        headers = _headers(timestamp_ms=_now_ms() + skew_ms)

        assert await enhanced.verify_request(headers, method="GET", path=PATH)

    async def test_non_numeric_timestamp(self, enhanced):
        headers = EnhancedAuthHeaders("billing", "yesterday", "n", "h")

        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(headers, method="GET", path=PATH)
        assert exc_info.value.reason == "invalid request timestamp"

    async def test_hash_from_wrong_secret(self, enhanced):
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(_headers(secret="guess"), method="GET", path=PATH)
        assert exc_info.value.reason == "invalid authentication hash"

    async def test_hash_replayed_against_other_method_or_path(self, enhanced):
        headers = _headers(method="GET", path=PATH)

        with pytest.raises(ServiceAuthError):
            await enhanced.verify_request(headers, method="POST", path=PATH)
        with pytest.raises(ServiceAuthError):
            await enhanced.verify_request(headers, method="GET", path="/v1/service/users")

    async def test_replayed_nonce(self, enhanced):
        headers = _headers(nonce=uuid.uuid4().hex)

        await enhanced.verify_request(headers, method="GET", path=PATH)
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(headers, method="GET", path=PATH)
        assert exc_info.value.reason == "replayed nonce"

    async def test_failed_hash_does_not_burn_nonce(self, enhanced):
        nonce = uuid.uuid4().hex
        with pytest.raises(ServiceAuthError):
            await enhanced.verify_request(
                _headers(secret="guess", nonce=nonce), method="GET", path=PATH
            )

        assert await enhanced.verify_request(_headers(nonce=nonce), method="GET", path=PATH)

    async def test_nonce_tracking_can_be_disabled(self, store, tokens, client_record):
        lenient = EnhancedServiceAuth(store, tokens, enforce_nonce_uniqueness=False)
        headers = _headers(nonce=uuid.uuid4().hex)

        await lenient.verify_request(headers, method="GET", path=PATH)
        assert await lenient.verify_request(headers, method="GET", path=PATH)

    async def test_ip_allowlist(self, enhanced, store):
        store.update_service_client("billing", ip_allowlist=["10.0.0.0/24"])

        assert await enhanced.verify_request(
            _headers(), method="GET", path=PATH, client_ip="10.0.0.7"
        )
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(
                _headers(), method="GET", path=PATH, client_ip="192.168.1.5"
            )
        assert exc_info.value.reason == "client address not permitted"
        with pytest.raises(ServiceAuthError):
            await enhanced.verify_request(_headers(), method="GET", path=PATH, client_ip=None)

    async def test_address_policy_hidden_without_secret(self, enhanced, store):
        store.update_service_client("billing", ip_allowlist=["10.0.0.0/24"])

        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.verify_request(
                _headers(secret="guessed-secret"),
                method="GET",
                path=PATH,
                client_ip="192.168.1.5",
            )
        assert exc_info.value.reason == "invalid authentication hash"


class TestAuthorize:
    async def test_token_proof_and_both_scopes(self, enhanced, tokens):
        token = tokens.issue("billing", [SCOPE_USER_READ])

        principal = await enhanced.authorize(
            token, _headers(), method="GET", path=PATH, required_scope=SCOPE_USER_READ
        )

        assert principal.auth_method == "enhanced"
        assert principal.client_id == "billing"
        assert principal.issuer == "billing"

    async def test_invalid_token_rejected_before_proof(self, enhanced):
        with pytest.raises(ServiceAuthError) as exc_info:
            await enhanced.authorize(
                "garbage", _headers(), method="GET", path=PATH, required_scope=SCOPE_USER_READ
            )
        assert exc_info.value.reason == "invalid token"

    async def test_token_scope_missing(self, enhanced, tokens):
        token = tokens.issue("billing", [SCOPE_INVITE_SEND])

        with pytest.raises(ForbiddenError) as exc_info:
            await enhanced.authorize(
                token, _headers(), method="GET", path=PATH, required_scope=SCOPE_USER_READ
            )
        assert exc_info.value.message == "insufficient token scope"

    async def test_client_scope_missing(self, enhanced, tokens):
        """Token grants user:create but the client registration does not."""
        token = tokens.issue("billing", [SCOPE_USER_CREATE])

        with pytest.raises(ForbiddenError) as exc_info:
            await enhanced.authorize(
                token, _headers(), method="GET", path=PATH, required_scope=SCOPE_USER_CREATE
            )
        assert exc_info.value.message == "insufficient client scope"


class TestLocalNonceCache:
    async def test_remember_once(self):
        cache = LocalNonceCache()

        assert await cache.remember_nonce("c", "n", 60) is True
        assert await cache.remember_nonce("c", "n", 60) is False
        assert await cache.remember_nonce("other", "n", 60) is True
