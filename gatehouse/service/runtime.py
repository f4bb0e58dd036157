from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatehouse.config import Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityLogService
from gatehouse.service.email import EmailService, TemplateCache
from gatehouse.service.gate import AccessDecisionGate
from gatehouse.service.hashing import SecretHasher
from gatehouse.service.locks import UserLocks
from gatehouse.service.second_factor import SecondFactorEngine
from gatehouse.service.sessions import SessionEngine
from gatehouse.service.tokens import TokenSigner
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
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
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to use in-process locks"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.templates = TemplateCache(
            Path(self.settings.template_dir) if self.settings.template_dir else None
        )
        self.email = EmailService(
            templates=self.templates,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            company_name=self.settings.company_name,
            support_email=self.settings.support_email,
            verify_email_ttl_minutes=self.settings.verify_email_token_ttl_minutes,
            reset_password_ttl_minutes=self.settings.reset_password_token_ttl_minutes,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.hasher = SecretHasher(self.settings)
        self.signer = TokenSigner(self.settings)
        self.locks = UserLocks(timeout=self.settings.lock_timeout_seconds, cache=self.cache)
        self.activity = ActivityLogService(
            self.store, store_timeout=self.settings.store_timeout_seconds
        )
        self.sessions = SessionEngine(
            self.store,
            self.hasher,
            self.signer,
            self.email,
            self.locks,
            self.activity,
            self.settings,
        )
        self.second_factor = SecondFactorEngine(
            self.store, self.hasher, self.email, self.locks, self.settings
        )
        self.gate = AccessDecisionGate(self.store, self.second_factor, self.settings)
        logger.info("runtime_init_completed", redis=bool(self.cache))


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
        runtime = Runtime(settings)
        return runtime
