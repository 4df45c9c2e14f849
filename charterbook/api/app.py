"""
FastAPI application factory.

* Registers routes for quotes, drivers, reservations and admin.
* Starts / stops the background expiry worker via lifespan events.
* Renders every ``DomainError`` as ``{"detail", "code"}`` with its status.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from charterbook.api.middleware import limiter
from charterbook.api.routes import admin, drivers, quotes, reservations
from charterbook.config import settings
from charterbook.domain.errors import DomainError
from charterbook.infrastructure.redis_client import close_redis
from charterbook.workers import expiry as _expiry

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry worker on startup; stop it and close Redis on shutdown."""
    await _expiry.start_expiry_loop()
    yield
    await _expiry.stop_expiry_loop()
    await close_redis()


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Charter Quote & Allocation API",
        description=(
            "Walks charter-trip quotes through pricing, driver assignment "
            "and payment, prevents double-booking of drivers and vehicles, "
            "and expires unpaid quotes after the 24 h payment window."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DomainError, domain_error_handler)

    # Routers
    app.include_router(quotes.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(reservations.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
