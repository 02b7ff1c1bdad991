"""
FastAPI application factory.

* Registers routes for search, bookings, the payment webhook and admin.
* Starts / stops the payment sweep worker via lifespan events.
* Maps ``AppError`` and validation failures to JSON error responses.
* Applies rate limiting (slowapi).
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from cabbooking.api.errors import register_error_handlers
from cabbooking.api.middleware import limiter
from cabbooking.api.routes import admin, bookings, payments, search
from cabbooking.integrations.clients import close_clients
from cabbooking.infrastructure.redis_client import close_redis
from cabbooking.workers import sweeper as _sweeper

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the payment sweep on startup; stop it and close clients on shutdown."""
    await _sweeper.start_sweep_loop()
    yield
    await _sweeper.stop_sweep_loop()
    await close_clients()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Cab Booking API",
        description=(
            "Outstation, local-package and airport cab bookings: fare "
            "quotes, booking lifecycle, online and cash payments, "
            "cancellations and refunds."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    # Routers
    app.include_router(search.router, prefix="/api/v1")
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
