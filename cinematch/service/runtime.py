from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from cinematch.config import get_settings, reset_settings_cache
from cinematch.logging import get_logger
from cinematch.service.auth import AuthService
from cinematch.service.email import EmailService
from cinematch.service.library import LibraryService
from cinematch.service.rate_limit import RateLimiter
from cinematch.service.signer import TokenSigner
from cinematch.service.tokens import SecretHasher
from cinematch.storage.memory import MemoryStore
from cinematch.storage.postgres import PostgresStore
from cinematch.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse((
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        ))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(state_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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
                    "Redis is required for login rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limit counters "
                    "are per process and reset on restart."
                ),
                mode=fallback_mode,
            )

        key_set = self.settings.signing_key_set()
        self.signer = TokenSigner(
            key_set, leeway_seconds=self.settings.clock_skew_leeway_seconds
        )
        self.hasher = SecretHasher.from_settings(self.settings)
        self.email_limiter = RateLimiter(
            "login_email",
            points=self.settings.email_rate_limit_points,
            duration_seconds=self.settings.email_rate_limit_duration_seconds,
            block_seconds=self.settings.email_rate_limit_block_seconds,
            cache=self.cache,
        )
        self.ip_limiter = RateLimiter(
            "login_ip",
            points=self.settings.ip_rate_limit_points,
            duration_seconds=self.settings.ip_rate_limit_duration_seconds,
            block_seconds=self.settings.ip_rate_limit_block_seconds,
            cache=self.cache,
        )
        self.mail_limiter = RateLimiter(
            "mail_ip",
            points=self.settings.mail_rate_limit_points,
            duration_seconds=self.settings.mail_rate_limit_duration_seconds,
            cache=self.cache,
        )
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            signer=self.signer,
            hasher=self.hasher,
            email=self.email,
            email_limiter=self.email_limiter,
            ip_limiter=self.ip_limiter,
            mail_limiter=self.mail_limiter,
        )
        self.library = LibraryService(self.store)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            signing_kids=sorted(key_set.keys),
            current_kid=key_set.current_kid,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
