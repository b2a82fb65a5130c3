"""FastAPI application for the dental booking engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dental_booking import __version__
from dental_booking.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from dental_booking.api.routes import appointments, availability, health, services
from dental_booking.config import get_settings
from dental_booking.core.database import init_db
from dental_booking.scheduling.errors import BookingError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting dental booking API")
    await init_db()
    logger.info("Dental booking API started successfully")

    yield

    logger.info("Shutting down dental booking API")


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dental Booking API",
        description="Appointment scheduling and constraint validation for dental clinics",
        version=__version__,
        lifespan=lifespan if with_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)

    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    app.include_router(health.router, tags=["health"])
    app.include_router(availability.router, prefix="/api/v1", tags=["availability"])
    app.include_router(appointments.router, prefix="/api/v1", tags=["appointments"])
    app.include_router(services.router, prefix="/api/v1", tags=["services"])

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        log = logger.info if exc.status_code < 409 else logger.warning
        log(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.rule_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
