"""
FastAPI application factory.

* Registers routes for bookings, drivers and admin.
* Builds the dispatch service (SQL store + Redis notification sink) and
  starts / stops the auto-assign worker via lifespan events.
* Maps ``DispatchError`` subclasses to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridedispatch.api.middleware import limiter
from ridedispatch.api.routes import admin, bookings, drivers
from ridedispatch.domain.errors import (
    DispatchError,
    Forbidden,
    InvalidTransition,
    NoCandidates,
    NotFound,
    PreconditionFailed,
    TransientStoreFailure,
    ValidationFailed,
)
from ridedispatch.infrastructure.database import async_session_factory
from ridedispatch.infrastructure.identity import RedisTokenResolver
from ridedispatch.infrastructure.notifications import RedisNotificationSink
from ridedispatch.infrastructure.redis_client import close_redis, get_redis
from ridedispatch.infrastructure.repositories import SqlDispatchStore
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.workers import auto_assign as _worker

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (Forbidden, 403),
    (ValidationFailed, 400),
    (InvalidTransition, 409),
    (PreconditionFailed, 409),
    (NoCandidates, 409),
    (TransientStoreFailure, 503),
)


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500
    )
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status, content={"detail": exc.message, "code": exc.code}
    )


async def build_service() -> DispatchService:
    redis = await get_redis()
    return DispatchService(
        SqlDispatchStore(async_session_factory), RedisNotificationSink(redis)
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire collaborators, start the worker on startup; stop on shutdown."""
    service = await build_service()
    app.state.dispatch_service = service
    app.state.identity_resolver = RedisTokenResolver(await get_redis())
    await _worker.start_auto_assign_loop(service)
    yield
    await _worker.stop_auto_assign_loop()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch API",
        description=(
            "Booking lifecycle and driver dispatch: status transitions, "
            "nearest-driver auto-assignment and the driver-offline cascade, "
            "all committed through optimistic transactions so no driver is "
            "ever double-booked."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
