"""FastAPI application entry point for the short-link service.

Application Lifecycle
=====================
::
    startup:   init_db() → init_kafka() → ServiceManager.initialize()
               (bloom filter sizing published / adopted here)
    serve:     routes from shortlink.routes
    shutdown:  ServiceManager.cleanup() → close_kafka() → close_db() → close_redis()

How to Use
===========
**Run the API**::
    uvicorn shortlink.main:app --host 0.0.0.0 --port 8000

**Run the stats consumer**::
    python -m shortlink.stats_consumer

Error Mapping
=============
::
    ConflictDetected, LockBusy          → 409
    AuthenticationFailed                → 401
    GenerationExhausted                 → 503
    StoreUnavailable                    → 503
"""

__all__ = ["app"]

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from shortlink.config import get_settings
from shortlink.database import close_db, init_db
from shortlink.dependencies import _service_manager
from shortlink.errors import (
    AuthenticationFailed,
    ConflictDetected,
    CoordinationError,
    GenerationExhausted,
    LockBusy,
    StoreUnavailable,
)
from shortlink.kafka import close_kafka, init_kafka
from shortlink.redis import close_redis
from shortlink.routes import router

settings = get_settings()
logger = logging.getLogger("shortlink")

_STATUS_BY_ERROR: dict[type[CoordinationError], int] = {
    ConflictDetected: 409,
    LockBusy: 409,
    AuthenticationFailed: 401,
    GenerationExhausted: 503,
    StoreUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await init_kafka()
    await _service_manager.initialize()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_kafka()
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short link service with Redis-coordinated registration, sessions and idempotent stats",
    lifespan=lifespan,
)


@app.exception_handler(CoordinationError)
async def coordination_error_handler(request: Request, exc: CoordinationError) -> JSONResponse:
    status_code = _STATUS_BY_ERROR.get(type(exc), 500)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
