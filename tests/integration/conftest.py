"""Integration-test conftest — real-Postgres fixtures (skipping lives in the root conftest).

Integration tests require:
    THREATSCRIBE_TEST_INTEGRATION=1   (set in shell before running)
    Postgres reachable at THREATSCRIBE_TEST_DSN
        (default postgresql://localhost:5432/threatscribe_test)

Run with:
    THREATSCRIBE_TEST_INTEGRATION=1 pytest tests/integration/ -v
"""

from __future__ import annotations

import os

import pytest

from threatscribe.research.store import PostgresJobStore

TEST_DSN = os.getenv("THREATSCRIBE_TEST_DSN", "postgresql://localhost:5432/threatscribe_test")


@pytest.fixture
async def pg_store():
    """A connected PostgresJobStore with empty tables."""
    store = PostgresJobStore(TEST_DSN)
    await store.connect()
    await store._pool.execute("TRUNCATE sections, jobs")
    yield store
    await store.close()
