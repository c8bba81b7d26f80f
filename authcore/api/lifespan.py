from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from authcore.logging import get_logger
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)


@asynccontextmanager
async def runtime_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the runtime with the app and release its resources on shutdown."""
    runtime = get_runtime()
    app.state.runtime = runtime
    await runtime.start()
    logger.info("app_startup_complete")
    try:
        yield
    finally:
        await runtime.close()
        logger.info("app_shutdown_complete")
