from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from taskdesk.config import get_settings, reset_settings_cache
from taskdesk.logging import get_logger
from taskdesk.service.audit import ActivityLogger
from taskdesk.service.email import EmailService
from taskdesk.service.otp import OtpConfig, OtpEngine
from taskdesk.service.session import SessionManager
from taskdesk.service.tokens import TokenConfig, TokenIssuer
from taskdesk.storage.memory import MemoryStore
from taskdesk.storage.postgres import PostgresStore
from taskdesk.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged."""
    if not url:
        return url
    try:
        parsed = urlsplit(url)
        if not parsed.password:
            return url
        host = parsed.netloc.rpartition("@")[2]
    except ValueError:
        return "<unparseable url>"
    return urlunsplit(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    full_at: float


class LocalRateLimiter:
    """Per-process token buckets, used when no Redis is configured.

    A bucket that has refilled to capacity is indistinguishable from a fresh
    one, so once the map holds more than ``max_keys`` entries the full buckets
    are dropped, then the least recently used ones until it fits again.
    """

    def __init__(self, max_keys: int = 10_000, *, clock: Callable[[], float] = time.monotonic):
        self.max_keys = max_keys
        self.clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def hit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """Take one token for ``key``; returns (allowed, remaining, reset_seconds)."""
        rate = limit / window_seconds
        now = self.clock()
        with self._lock:
            bucket = self._buckets.get(key)
            tokens = float(limit)
            if bucket is not None:
                tokens = min(tokens, bucket.tokens + (now - bucket.updated_at) * rate)
            if tokens < 1:
                return False, 0, math.ceil((1 - tokens) / rate)
            tokens -= 1
            self._buckets[key] = _Bucket(tokens, now, now + (limit - tokens) / rate)
            if len(self._buckets) > self.max_keys:
                self._prune(now)
            return True, int(tokens), 0

    def _prune(self, now: float) -> None:
        for key in [k for k, b in self._buckets.items() if b.full_at <= now]:
            del self._buckets[key]
        overflow = len(self._buckets) - self.max_keys
        if overflow > 0:
            stalest = sorted(self._buckets, key=lambda k: self._buckets[k].updated_at)
            for key in stalest[:overflow]:
                del self._buckets[key]


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; fix the URL or unset it "
                        "to use in-process rate limits."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        if self.cache is None:
            logger.info("rate_limits_in_process")

        self.email = EmailService.from_settings(self.settings)
        self.audit = ActivityLogger(self.store)
        self.otp = OtpEngine(self.store, OtpConfig.from_settings(self.settings))
        self.tokens = TokenIssuer(self.store, TokenConfig.from_settings(self.settings))
        self.session = SessionManager(
            self.store, self.otp, self.tokens, self.email, self.audit
        )
        self.local_rate_limiter = LocalRateLimiter()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_transport=self.email.transport,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from both constructing a runtime.
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


async def check_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit, in Redis when configured and in-process otherwise.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return True, 0, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            window_seconds=window_seconds,
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    return runtime.local_rate_limiter.hit(key, limit, window_seconds)
