"""FastAPI application setup."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enrollcore.api.dependencies import close_services, init_services
from enrollcore.api.models import APIResponse
from enrollcore.api.routes import coupons, courses, enrollments, payments, subscriptions
from enrollcore.config import Settings, load_settings
from enrollcore.exceptions import EnrollmentEngineError, ErrorKind

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.CAPACITY_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.EXTERNAL_SERVICE: status.HTTP_502_BAD_GATEWAY,
}


def error_response(exc: EnrollmentEngineError) -> JSONResponse:
    """Render an engine error in the response envelope."""
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=APIResponse[None](data=None, error=exc.message, kind=exc.kind.value).model_dump(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    settings = app.state.settings if hasattr(app.state, "settings") else load_settings()
    init_services(settings)
    logger.info("enrollcore API started (db=%s)", settings.db_path)

    yield
    # Shutdown
    close_services()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="enrollcore API",
        description="REST API for course admission, coupon pricing and enrollment lifecycle",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store config for lifespan manager
    if settings is not None:
        app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(EnrollmentEngineError)
    async def engine_error_handler(_request: Request, exc: EnrollmentEngineError) -> JSONResponse:
        if exc.kind == ErrorKind.EXTERNAL_SERVICE:
            logger.warning("External service failure: %s", exc.message)
        return error_response(exc)

    # Include routers
    app.include_router(courses.router, prefix="/api/v1")
    app.include_router(enrollments.router, prefix="/api/v1")
    app.include_router(coupons.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")

    return app


# Default app instance
app = create_app()
