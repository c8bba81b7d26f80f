from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Request, Response

from authcore.service.errors import RateLimitedError
from authcore.service.rate_limit import RateLimitDecision, RateLimiter


def rate_limit_dependency(
    limiter: RateLimiter,
) -> Callable[[Request, Response], Awaitable[RateLimitDecision]]:
    """Build a FastAPI dependency that enforces ``limiter`` per client address.

    Usage::

        login_limit = rate_limit_dependency(runtime.login_limiter)

        @app.post("/auth/login", dependencies=[Depends(login_limit)])
        async def login(...): ...
    """

    async def enforce(request: Request, response: Response) -> RateLimitDecision:
        remote_addr = request.client.host if request.client else None
        decision = await limiter.check_request(request.headers, remote_addr)
        headers = decision.headers()
        if not decision.allowed:
            raise RateLimitedError(
                limiter.rule.message,
                headers=headers,
                retry_after=decision.retry_after(limiter.now()),
            )
        for name, value in headers.items():
            response.headers[name] = value
        return decision

    return enforce
