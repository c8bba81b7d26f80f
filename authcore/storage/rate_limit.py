from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Protocol

from authcore.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitData:
    count: int
    # Window end as epoch seconds
    reset_time: float


class RateLimitStore(Protocol):
    """Key -> counter storage shared by every RateLimiter.

    ``increment`` raises KeyError when the key has no live counter so the
    caller can open a fresh window instead of counting into a stale one.
    """

    async def get(self, key: str) -> Optional[RateLimitData]:
        ...

    async def set(self, key: str, data: RateLimitData, ttl_seconds: float) -> None:
        ...

    async def increment(self, key: str) -> int:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def cleanup(self) -> None:
        ...

    async def close(self) -> None:
        ...


class MemoryRateLimitStore:
    """In-process counters with an owned, stoppable sweep task.

    The sweep only bounds memory; expired counters are already invisible to
    ``get``. Call :meth:`start` from a running loop and :meth:`close` on
    shutdown, or use the store as an async context manager.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._counters: Dict[str, RateLimitData] = {}
        self._lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    @property
    def sweeping(self) -> bool:
        return self._task is not None and not self._task.done()

    async def get(self, key: str) -> Optional[RateLimitData]:
        with self._lock:
            data = self._counters.get(key)
            if not data:
                return None
            if data.reset_time <= self._clock():
                del self._counters[key]
                return None
            return replace(data)

    async def set(self, key: str, data: RateLimitData, ttl_seconds: float) -> None:
        # Expiry lives in reset_time; ttl_seconds only matters for external stores
        with self._lock:
            self._counters[key] = replace(data)

    async def increment(self, key: str) -> int:
        with self._lock:
            data = self._counters.get(key)
            if not data or data.reset_time <= self._clock():
                raise KeyError(key)
            data.count += 1
            return data.count

    async def delete(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    async def cleanup(self) -> None:
        now = self._clock()
        with self._lock:
            stale = [key for key, data in self._counters.items() if data.reset_time <= now]
            for key in stale:
                del self._counters[key]
        if stale:
            logger.debug("rate_limit_counters_swept", count=len(stale))

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            logger.warning("rate_limit_sweep_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("rate_limit_sweep_started", interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the periodic sweep and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("rate_limit_sweep_stopped")

    async def close(self) -> None:
        await self.stop()
        with self._lock:
            self._counters.clear()

    async def __aenter__(self) -> "MemoryRateLimitStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.cleanup()
            except Exception as exc:
                logger.error("rate_limit_sweep_error", error=str(exc))
