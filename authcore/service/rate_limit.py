from __future__ import annotations

import ipaddress
import math
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from redis.exceptions import RedisError

from authcore.config import RateLimitBackend, Settings
from authcore.logging import get_logger
from authcore.storage.rate_limit import MemoryRateLimitStore, RateLimitData, RateLimitStore
from authcore.storage.redis_cache import RedisRateLimitStore

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"
MAX_USER_AGENT_LENGTH = 255


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = next((v for k, v in headers.items() if k.lower() == name), None)
    return value


def extract_client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    """Resolve the client identity used for rate-limit keys.

    Order: left-most ``X-Forwarded-For`` entry, then ``X-Real-IP``, then the
    transport address, then the literal ``"unknown"``.
    """
    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first and first != UNKNOWN_CLIENT:
            return first
    real_ip = _header(headers, "x-real-ip")
    if real_ip:
        real_ip = real_ip.strip()
        if real_ip and real_ip != UNKNOWN_CLIENT:
            return real_ip
    if remote_addr and remote_addr != UNKNOWN_CLIENT:
        return remote_addr
    return UNKNOWN_CLIENT


def rate_limit_key(namespace: str, client_id: str) -> str:
    return f"{namespace}:{client_id}"


def is_valid_ip(value: Optional[str]) -> bool:
    if not value or value == UNKNOWN_CLIENT:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def extract_user_agent(headers: Mapping[str, str]) -> str:
    user_agent = _header(headers, "user-agent")
    if not user_agent:
        return UNKNOWN_CLIENT
    return user_agent[:MAX_USER_AGENT_LENGTH]


@dataclass(frozen=True)
class RateLimitRule:
    namespace: str
    max_requests: int
    window_seconds: float
    message: str = "too many requests, please retry later"


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_time: float
    limit: int

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_time - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_time)),
        }


class RateLimiter:
    """Fixed-window counter per key over a shared :class:`RateLimitStore`."""

    def __init__(
        self,
        store: RateLimitStore,
        rule: RateLimitRule,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.rule = rule
        self._clock = clock
        self._fallback_store: Optional[MemoryRateLimitStore] = None

    def now(self) -> float:
        return self._clock()

    def key_for(self, client_id: str) -> str:
        return rate_limit_key(self.rule.namespace, client_id)

    async def _open_window(
        self, store: RateLimitStore, key: str, now: float
    ) -> RateLimitDecision:
        data = RateLimitData(count=1, reset_time=now + self.rule.window_seconds)
        await store.set(key, data, self.rule.window_seconds)
        return RateLimitDecision(
            allowed=True,
            remaining=max(0, self.rule.max_requests - 1),
            reset_time=data.reset_time,
            limit=self.rule.max_requests,
        )

    def _local_store(self) -> MemoryRateLimitStore:
        if self._fallback_store is None:
            self._fallback_store = MemoryRateLimitStore(clock=self._clock)
        return self._fallback_store

    async def check(self, key: str) -> RateLimitDecision:
        """Count one request against ``key``.

        If the shared store fails mid-flight the request is counted in a
        process-local store instead; the shared store is retried on every call.
        """
        try:
            return await self._check(self.store, key)
        except RedisError as exc:
            logger.warning(
                "rate_limit_store_fallback",
                backend="memory",
                reason="redis_error",
                namespace=self.rule.namespace,
                error=str(exc),
            )
            return await self._check(self._local_store(), key)

    async def _check(self, store: RateLimitStore, key: str) -> RateLimitDecision:
        now = self._clock()
        limit = self.rule.max_requests
        existing = await store.get(key)
        if existing is None or existing.reset_time <= now:
            return await self._open_window(store, key, now)
        if existing.count >= limit:
            return RateLimitDecision(
                allowed=False, remaining=0, reset_time=existing.reset_time, limit=limit
            )
        try:
            new_count = await store.increment(key)
        except KeyError:
            # Window expired between get and increment
            return await self._open_window(store, key, now)
        # The store's count is authoritative under concurrent callers
        return RateLimitDecision(
            allowed=new_count <= limit,
            remaining=max(0, limit - new_count),
            reset_time=existing.reset_time,
            limit=limit,
        )

    async def check_request(
        self, headers: Mapping[str, str], remote_addr: Optional[str] = None
    ) -> RateLimitDecision:
        key = self.key_for(extract_client_ip(headers, remote_addr))
        decision = await self.check(key)
        if not decision.allowed:
            logger.warning(
                "rate_limited",
                namespace=self.rule.namespace,
                reset_time=int(decision.reset_time),
            )
        return decision

    async def reset(self, key: str) -> None:
        if self._fallback_store is not None:
            await self._fallback_store.delete(key)
        try:
            await self.store.delete(key)
        except RedisError as exc:
            logger.warning(
                "rate_limit_reset_failed", namespace=self.rule.namespace, error=str(exc)
            )

    async def reset_request(
        self, headers: Mapping[str, str], remote_addr: Optional[str] = None
    ) -> None:
        await self.reset(self.key_for(extract_client_ip(headers, remote_addr)))


def default_rules(settings: Settings) -> dict[str, RateLimitRule]:
    return {
        "login": RateLimitRule(
            namespace="auth",
            max_requests=settings.login_rate_limit_max,
            window_seconds=settings.login_rate_limit_window_seconds,
            message="too many login attempts, please retry later",
        ),
        "register": RateLimitRule(
            namespace="register",
            max_requests=settings.register_rate_limit_max,
            window_seconds=settings.register_rate_limit_window_seconds,
            message="too many registrations from this address, please retry later",
        ),
        "general": RateLimitRule(
            namespace="general",
            max_requests=settings.general_rate_limit_max,
            window_seconds=settings.general_rate_limit_window_seconds,
        ),
    }


def _wants_redis(settings: Settings) -> bool:
    if settings.rate_limit_backend == RateLimitBackend.MEMORY:
        return False
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        return True
    return settings.is_production or settings.server_workers > 1


def create_rate_limit_store(settings: Settings) -> RateLimitStore:
    """Pick the rate-limit backend once at startup.

    Redis is used when scaled out; an unreachable or unconfigured Redis falls
    back to the in-process store with a logged warning.
    """
    if _wants_redis(settings):
        if not settings.redis_url:
            logger.warning(
                "rate_limit_store_fallback",
                backend="memory",
                reason="REDIS_URL not configured",
            )
        else:
            try:
                RedisRateLimitStore.verify_connection(settings.redis_url)
            except (RedisError, OSError) as exc:
                logger.warning(
                    "rate_limit_store_fallback",
                    backend="memory",
                    reason="redis_unreachable",
                    error=str(exc),
                )
            else:
                logger.info("rate_limit_store_selected", backend="redis")
                return RedisRateLimitStore(settings.redis_url)
    logger.info("rate_limit_store_selected", backend="memory")
    return MemoryRateLimitStore(sweep_interval=settings.rate_limit_sweep_seconds)
