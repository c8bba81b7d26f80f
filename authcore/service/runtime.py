from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.lockout import LockoutTracker
from authcore.service.passwords import CredentialHasher
from authcore.service.rate_limit import RateLimiter, create_rate_limit_store, default_rules
from authcore.service.strength import StrengthValidator
from authcore.service.tokens import AccessTokenIssuer, RefreshTokenService
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.rate_limit import MemoryRateLimitStore, RateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
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
    """Composition root: builds every component once from ``Settings``.

    Secrets flow from settings into the hasher and token issuer here; nothing
    below this layer reads the environment.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Union[MemoryStore, PostgresStore]] = None,
        rate_limit_store: Optional[RateLimitStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.memory_store_enabled,
        )

        if store is not None:
            self.store = store
        elif self.settings.memory_store_enabled:
            self.store = MemoryStore()
        else:
            if not self.settings.database_url:
                raise RuntimeError("DATABASE_URL is required when USE_MEMORY_STORE is false")
            try:
                self.store = PostgresStore(self.settings.database_url)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if isinstance(self.store, MemoryStore) else "postgres",
        )

        self.validator = StrengthValidator()
        self.hasher = CredentialHasher.from_settings(self.settings, validator=self.validator)
        self.lockout = LockoutTracker.from_settings(self.store, self.settings)
        self.refresh_tokens = RefreshTokenService.from_settings(self.store, self.settings)
        self.access_tokens = AccessTokenIssuer.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.lockout,
            self.refresh_tokens,
            self.access_tokens,
        )

        self.rate_limit_store = rate_limit_store or create_rate_limit_store(self.settings)
        self.rate_limiters: Dict[str, RateLimiter] = {
            name: RateLimiter(self.rate_limit_store, rule)
            for name, rule in default_rules(self.settings).items()
        }
        self._started = False

    @property
    def login_limiter(self) -> RateLimiter:
        return self.rate_limiters["login"]

    @property
    def register_limiter(self) -> RateLimiter:
        return self.rate_limiters["register"]

    @property
    def general_limiter(self) -> RateLimiter:
        return self.rate_limiters["general"]

    async def start(self) -> None:
        """Start background resources; must run inside the serving event loop."""
        if self._started:
            return
        if isinstance(self.rate_limit_store, MemoryRateLimitStore):
            await self.rate_limit_store.start()
        self._started = True

    async def close(self) -> None:
        await self.rate_limit_store.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        self._started = False
        logger.info("runtime_closed")


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


def reset_runtime_for_tests() -> None:
    """Drop the singleton and cached settings so the next call rebuilds from env."""
    global runtime
    with _runtime_lock:
        previous, runtime = runtime, None
        reset_settings_cache()
    if previous is None:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.close())
    else:
        loop.create_task(previous.close())
