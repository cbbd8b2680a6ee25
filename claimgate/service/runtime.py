from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from claimgate.config import get_settings, reset_settings_cache
from claimgate.logging import get_logger
from claimgate.service.auth import AuthService
from claimgate.service.claims import ClaimTokenManager
from claimgate.service.enhanced_auth import EnhancedServiceAuth, LocalNonceCache
from claimgate.service.passwords import CredentialHasher
from claimgate.service.resolver import SessionResolver
from claimgate.service.service_clients import ServiceClientManager
from claimgate.service.service_tokens import (
    SCOPE_INVITE_SEND,
    SCOPE_SESSION_CREATE,
    SCOPE_USER_CREATE,
    SCOPE_USER_READ,
    ServiceTokenAuthority,
    parse_expires_in,
)
from claimgate.service.temp_sessions import TemporarySessionManager
from claimgate.storage.memory import MemoryStore
from claimgate.storage.postgres import PostgresStore
from claimgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

MAIN_APP_CLIENT_ID = "main-app"
MAIN_APP_SCOPES = (SCOPE_USER_READ, SCOPE_USER_CREATE, SCOPE_INVITE_SEND, SCOPE_SESSION_CREATE)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=(
                        self.settings.service_client_encryption_key
                        or self.settings.service_jwt_secret
                    ),
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding connections to per-test loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for nonce replay protection; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for a process-local cache."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="nonce replay cache is process-local; replays across workers are not detected",
            )

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.tokens = ServiceTokenAuthority(
            self.settings.service_jwt_secret,
            audience=self.settings.service_token_audience,
            default_ttl=parse_expires_in(self.settings.service_token_default_ttl),
            max_ttl=timedelta(hours=self.settings.service_token_max_ttl_hours),
        )
        self.auth = AuthService(self.store, self.hasher, self.settings)
        self.claims = ClaimTokenManager(self.store, self.hasher, self.settings)
        self.temp_sessions = TemporarySessionManager(self.store, self.claims, self.settings)
        self.resolver = SessionResolver(self.store, self.temp_sessions)
        self.enhanced_auth = EnhancedServiceAuth(
            self.store,
            self.tokens,
            window_seconds=self.settings.enhanced_auth_window_seconds,
            nonce_cache=self.cache or LocalNonceCache(),
            enforce_nonce_uniqueness=self.settings.enforce_nonce_uniqueness,
        )
        self.service_clients = ServiceClientManager(self.store, self.tokens)
        if self.settings.main_app_client_secret:
            self.service_clients.ensure_client(
                MAIN_APP_CLIENT_ID,
                "Main Application",
                self.settings.main_app_client_secret,
                MAIN_APP_SCOPES,
            )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            nonce_tracking=self.settings.enforce_nonce_uniqueness,
        )

    def purge_expired_sessions(self) -> int:
        return self.temp_sessions.purge_expired() + self.auth.purge_expired()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
