"""Shared pytest fixtures and configuration."""

import uuid

import pytest

from enrollcore.auth import Actor, Role
from enrollcore.store import RecordStore


# Register custom markers
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: fast tests with no external dependencies")
    config.addinivalue_line("markers", "integration: component interaction tests")


# Shared fixtures


@pytest.fixture
def store() -> RecordStore:
    """Create an in-memory RecordStore."""
    s = RecordStore(":memory:", retry_backoff=0)
    yield s
    s.close()


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=str(uuid.uuid4()), role=Role.ADMIN)


@pytest.fixture
def mentor() -> Actor:
    return Actor(user_id=str(uuid.uuid4()), role=Role.MENTOR)


@pytest.fixture
def student() -> Actor:
    return Actor(user_id=str(uuid.uuid4()), role=Role.STUDENT)
