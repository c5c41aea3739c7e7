"""Pytest configuration and fixtures."""

import copy
import os
from typing import Any, Callable, Dict

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing driftwatch.db
# This prevents the default /store directory from being created
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from driftwatch.db import Base
from driftwatch.models import *  # noqa: F401,F403 - registers tables on Base
from driftwatch.services.container_store import ContainerStore
from driftwatch.services.event_bus import EventBus


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store(event_bus):
    """In-memory container store (no persistence)."""
    return ContainerStore(event_bus)


BASE_CONTAINER: Dict[str, Any] = {
    "id": "c1",
    "name": "app",
    "status": "running",
    "watcher": "local",
    "image": {
        "id": "sha256:image-1",
        "registry": {"name": "hub", "url": "https://registry-1.docker.io/v2"},
        "name": "library/app",
        "tag": {"value": "1.2.0", "semver": True},
        "digest": {"watch": False},
        "architecture": "amd64",
        "os": "linux",
    },
}


def _merge(target: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value
    return target


@pytest.fixture
def make_container() -> Callable[..., Dict[str, Any]]:
    """Factory for camelCase container documents with nested overrides."""

    def _make(**overrides: Any) -> Dict[str, Any]:
        return _merge(copy.deepcopy(BASE_CONTAINER), overrides)

    return _make
