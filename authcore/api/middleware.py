from __future__ import annotations

from fastapi import FastAPI, Request

from authcore.logging import correlation_id_var, set_correlation_id

REQUEST_ID_HEADER = "X-Request-ID"


def register_correlation_middleware(app: FastAPI) -> None:
    """Bind a correlation id to every request and echo it in ``X-Request-ID``.

    A well-formed client-supplied id is reused; anything else is replaced by a
    fresh UUID so arbitrary header content never reaches the logs.
    """

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.set(None)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
