"""Shared fixtures for the lifecycle toolkit tests."""

import pytest
from purge_fakes import NOW, InMemoryCategory

from lifecycle_toolkit.config import LifecycleConfig, set_config
from lifecycle_toolkit.database import Database
from lifecycle_toolkit.purge import CategoryRegistry
from lifecycle_toolkit.service import LifecycleService


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the global configuration from leaking between tests."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def config(tmp_path):
    """Fast configuration: small pages, no back-off, short timeouts."""
    return LifecycleConfig(
        environment="test",
        database_url="sqlite:///:memory:",
        page_size=2,
        operation_timeout_seconds=0.5,
        max_retries=2,
        retry_backoff_seconds=0.0,
        audit_spool_path=str(tmp_path / "spool"),
    )


@pytest.fixture
def database():
    """In-memory database with all lifecycle tables."""
    db = Database("sqlite:///:memory:")
    yield db
    db.dispose()


@pytest.fixture
def exports():
    return InMemoryCategory("exports")


@pytest.fixture
def registry(exports):
    return CategoryRegistry([exports])


@pytest.fixture
def service(database, registry, config):
    """Fully wired service with a fixed clock."""
    return LifecycleService(database, registry=registry, config=config, clock=lambda: NOW)
