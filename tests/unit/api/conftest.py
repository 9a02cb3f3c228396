"""Fixtures for API route tests."""

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from enrollcore.api.app import error_response
from enrollcore.api.dependencies import Services, get_services
from enrollcore.api.routes import coupons, courses, enrollments, payments, subscriptions
from enrollcore.config import Settings
from enrollcore.exceptions import EnrollmentEngineError
from enrollcore.store import RecordStore


@pytest.fixture
def services(store: RecordStore) -> Services:
    """Engine components over the in-memory store."""
    return Services.build(store, Settings())


@pytest.fixture
def app(services: Services) -> FastAPI:
    """Create a test FastAPI app with the services dependency overridden."""
    app = FastAPI()

    def override_get_services():
        yield services

    app.dependency_overrides[get_services] = override_get_services

    @app.exception_handler(EnrollmentEngineError)
    async def engine_error_handler(_request: Request, exc: EnrollmentEngineError) -> JSONResponse:
        return error_response(exc)

    for module in (courses, enrollments, coupons, payments, subscriptions):
        app.include_router(module.router, prefix="/api/v1")
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create a test client."""
    return TestClient(app)
