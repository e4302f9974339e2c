"""
Pytest configuration and fixtures for the price import tests.

Every test gets its own in-memory SQLite database, so no external database
is needed. SKIP_DB_INIT keeps the application lifespan from connecting to
the configured DATABASE_URL.
"""

import os

os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy.pool import StaticPool

from price_import.db.models import create_import_tables
from price_import.db.session import build_engine
from price_import.domain.imports.jobs import OperationStatusStore
from price_import.domain.imports.orchestrator import ImportOrchestrator
from price_import.domain.imports.progress import ProgressTracker
from price_import.domain.imports.repository import SqlAlchemyEntityRepository


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads through a single connection."""
    engine = build_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    create_import_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return SqlAlchemyEntityRepository(engine)


@pytest.fixture
def status_store(engine):
    return OperationStatusStore(engine)


@pytest.fixture
def orchestrator(repository, status_store):
    tracker = ProgressTracker(status_store, persist_interval=0)
    return ImportOrchestrator(repository, status_store, tracker)
