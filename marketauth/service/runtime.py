from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from marketauth.config import Settings, get_settings, reset_settings_cache
from marketauth.logging import get_logger
from marketauth.service.action_tokens import ActionTokenLedger
from marketauth.service.auth import AuthService
from marketauth.service.email import EmailService
from marketauth.service.federated import FederatedIdentityBridge, GoogleAssertionVerifier
from marketauth.service.sessions import RefreshSessionStore
from marketauth.service.signer import CredentialSigner
from marketauth.storage.memory import MemoryStore
from marketauth.storage.models import utcnow
from marketauth.storage.postgres import PostgresStore
from marketauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_LOCAL_RATE_LIMIT_MAX_KEYS = 10_000


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
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
    """Composition root: builds every collaborator once and owns their lifecycle."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are in-memory only.",
                mode=fallback_mode,
            )

        self.signer = CredentialSigner(self.settings)
        self.sessions = RefreshSessionStore(self.store)
        self.ledger = ActionTokenLedger(self.store, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.signer,
            self.sessions,
            self.ledger,
            self.email,
            self.settings,
        )
        self.federated = FederatedIdentityBridge(
            GoogleAssertionVerifier(
                self.settings.google_tokeninfo_url,
                timeout_seconds=self.settings.storage_timeout_seconds,
            ),
            self.store,
            self.auth,
            audience=self.settings.google_client_id,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            federated_configured=bool(self.settings.google_client_id),
            refresh_reuse_detection=self.settings.refresh_reuse_detection,
        )

    def purge_refresh_sessions(self) -> int:
        return self.sessions.purge_older_than(self.settings.refresh_retention_days)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked under a lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime(settings)
        return runtime


def _prune_idle_buckets(buckets: Dict[str, Tuple[float, datetime, int]], now: datetime) -> int:
    """Drop buckets idle for at least their window, which have refilled completely."""
    idle = [
        key
        for key, (_, last_ts, window_seconds) in buckets.items()
        if (now - last_ts).total_seconds() >= window_seconds
    ]
    for key in idle:
        del buckets[key]
    if idle:
        logger.debug("rate_limit_buckets_pruned", pruned=len(idle), remaining=len(buckets))
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token bucket backed by Redis, or by process memory when Redis is absent.

    Returns ``(allowed, remaining, reset_after_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if len(runtime._local_rate_limits) >= _LOCAL_RATE_LIMIT_MAX_KEYS:
            _prune_idle_buckets(runtime._local_rate_limits, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
    return allowed, int(tokens), reset_seconds


__all__ = [
    "Runtime",
    "check_rate_limit",
    "get_runtime",
    "reset_runtime_for_tests",
]
