"""Root conftest — shared pytest markers and skip guards.

Markers
-------
unit        fast, offline: SQLite in tmp_path, MockGenerator
integration requires Postgres (set THREATSCRIBE_TEST_INTEGRATION=1)
slow        expected to take > 5 seconds
"""

from __future__ import annotations

import os

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, offline tests")
    config.addinivalue_line("markers", "integration: requires a live Postgres")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")


# ── Skip guards ───────────────────────────────────────────────────────────────

requires_integration = pytest.mark.skip(
    reason="Set THREATSCRIBE_TEST_INTEGRATION=1 to run integration tests",
)


def pytest_collection_modifyitems(config, items):
    """Skip every test marked ``integration`` unless the env flag is set."""
    if os.getenv("THREATSCRIBE_TEST_INTEGRATION"):
        return
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(requires_integration)
