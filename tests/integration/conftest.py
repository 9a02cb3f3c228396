"""Fixtures for integration tests against a SQLite file."""

import tempfile
from pathlib import Path

import pytest

from enrollcore.store import RecordStore


@pytest.fixture
def temp_db_path() -> str:
    """Create a temporary database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        return f.name


@pytest.fixture
def file_store(temp_db_path: str) -> RecordStore:
    """A file-backed store with a generous retry budget for contended writes."""
    store = RecordStore(temp_db_path, busy_timeout=30.0, max_attempts=50, retry_backoff=0.01)
    yield store
    store.close()
    # Cleanup
    Path(temp_db_path).unlink(missing_ok=True)
    Path(f"{temp_db_path}-wal").unlink(missing_ok=True)
    Path(f"{temp_db_path}-shm").unlink(missing_ok=True)
