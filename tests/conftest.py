"""Pytest configuration and shared fixtures."""
import os
import sys

import pytest
import pytest_asyncio

# Ensure the project root is on sys.path so 'posvault' is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from posvault.backup.repository import InMemoryRepository  # noqa: E402
from posvault.context import build_context  # noqa: E402
from posvault.db.connection import LocalStore  # noqa: E402
from posvault.observability.metrics import MetricsCollector  # noqa: E402
from posvault.sync.remote import InMemoryChangeLog  # noqa: E402
from posvault.transform.pipeline import TransformPipeline  # noqa: E402
from tests.support import TEST_KDF_ITERATIONS, create_app_schema, make_settings  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def pipeline():
    return TransformPipeline("test-passphrase", "test-salt", iterations=TEST_KDF_ITERATIONS)


@pytest_asyncio.fixture
async def store(tmp_path):
    s = LocalStore(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await s.connect()
    await s.create_tables()
    await create_app_schema(s)
    yield s
    await s.disconnect()


@pytest_asyncio.fixture
async def ctx(settings):
    c = build_context(
        settings,
        repository=InMemoryRepository(),
        remote=InMemoryChangeLog(),
        metrics=MetricsCollector(),
    )
    await c.open()
    await create_app_schema(c.store)
    yield c
    await c.close()
