"""Unit-test conftest — MockGenerator, recording sinks, and store fixtures.

All fixtures here are available to every test under tests/unit/ without import.
Everything runs offline: the store is SQLite in ``tmp_path``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import pytest

from threatscribe.jobs import BusRegistry, JobOrchestrator
from threatscribe.models import JobEvent, JobStatus
from threatscribe.research.store import SqliteJobStore, StoreError
from threatscribe.tools.openrouter import GenerationError


# ─────────────────────────────────────────────────────────────────────────────
# MockGenerator: drop-in replacement for OpenRouterClient
# ─────────────────────────────────────────────────────────────────────────────

class MockGenerator:
    """Configurable fake content generator.

    Args:
        delay:          Seconds to sleep inside each section call.
        gate:           If set, section calls block until the event is set.
        fail_sections:  Section titles whose generation raises GenerationError.
        raises:         If set, every section call raises this.
        outline_raises: If set, generate_outline raises this.
        empty:          Section calls return whitespace only.
    """

    def __init__(
        self,
        *,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
        fail_sections: Iterable[str] = (),
        raises: Exception | None = None,
        outline_raises: Exception | None = None,
        empty: bool = False,
    ) -> None:
        self.delay = delay
        self.gate = gate
        self.fail_sections = set(fail_sections)
        self.raises = raises
        self.outline_raises = outline_raises
        self.empty = empty
        # Call records for assertion
        self.outline_calls: list[str] = []
        self.section_calls: list[str] = []
        self.closed = False

    async def generate_outline(self, topic: str, depth: int) -> str:
        self.outline_calls.append(topic)
        if self.outline_raises:
            raise self.outline_raises
        return f"# Outline: {topic}\n\n1. Landscape\n2. Vectors\n3. Defense"

    async def generate_section_content(
        self, topic: str, section_title: str, section_description: str, depth: int,
    ) -> str:
        self.section_calls.append(section_title)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        if self.raises:
            raise self.raises
        if section_title in self.fail_sections:
            raise GenerationError("HTTP 503: upstream overloaded")
        if self.empty:
            return "   "
        return (
            f"## {section_title}\n\n"
            f"Analysis of {topic} at depth {depth}: {section_description}."
        )

    async def close(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────

class RecordingSink:
    """Observer that decodes and keeps every event it receives."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.events: list[JobEvent] = []

    async def send(self, payload: str) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        self.events.append(JobEvent.from_wire(payload))

    @property
    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]

    def for_section(self, key: str) -> list[JobEvent]:
        return [e for e in self.events if e.section_key == key]


class FailingSink:
    """Observer whose writes fail after ``ok_sends`` successful ones."""

    def __init__(self, ok_sends: int = 0) -> None:
        self.ok_sends = ok_sends
        self.attempts = 0

    async def send(self, payload: str) -> None:
        self.attempts += 1
        if self.attempts > self.ok_sends:
            raise ConnectionResetError("observer went away")


# ─────────────────────────────────────────────────────────────────────────────
# FlakyStore: SqliteJobStore with injectable write failures
# ─────────────────────────────────────────────────────────────────────────────

class FlakyStore(SqliteJobStore):
    """SQLite store whose section writes fail on demand.

    Args:
        fail_section_keys:  Keys whose create_section raises StoreError.
        failures_per_key:   How many times each key fails before succeeding
                            (None = always).
        fail_section_reads: get_sections_by_job raises StoreError.
    """

    def __init__(
        self,
        path,
        *,
        fail_section_keys: Iterable[str] = (),
        failures_per_key: int | None = None,
        fail_section_reads: bool = False,
    ) -> None:
        super().__init__(path)
        self.fail_section_keys = set(fail_section_keys)
        self.failures_per_key = failures_per_key
        self.fail_section_reads = fail_section_reads
        self.section_failures: dict[str, int] = {}

    async def create_section(self, section):
        key = section.section_key
        if key in self.fail_section_keys:
            count = self.section_failures.get(key, 0)
            if self.failures_per_key is None or count < self.failures_per_key:
                self.section_failures[key] = count + 1
                raise StoreError("create_section failed: disk I/O error")
        return await super().create_section(section)

    async def get_sections_by_job(self, job_id, run_number=None, *, all_runs=False):
        if self.fail_section_reads:
            raise StoreError("get_sections_by_job failed: connection lost")
        return await super().get_sections_by_job(job_id, run_number, all_runs=all_runs)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

async def wait_for_status(orchestrator, job_id: str, status: JobStatus, timeout: float = 5.0):
    """Poll the store until the job reaches ``status``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await orchestrator.get_job(job_id)
        if job.status == status:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status.value}, wanted {status.value}")
        await asyncio.sleep(0.01)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
async def store(tmp_path):
    """A connected SQLite store in a fresh temp directory."""
    s = SqliteJobStore(tmp_path / "threatscribe.db")
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def registry():
    return BusRegistry()


@pytest.fixture
def mock_generator():
    """A MockGenerator with instant responses."""
    return MockGenerator()


@pytest.fixture
async def orchestrator(store, registry, mock_generator):
    orch = JobOrchestrator(store, registry, mock_generator)
    yield orch
    await orch.shutdown(close_store=False)


@pytest.fixture
def make_generator():
    """Factory for MockGenerator with custom behaviour."""
    return MockGenerator


@pytest.fixture
def make_sink():
    return RecordingSink


@pytest.fixture
def make_failing_sink():
    return FailingSink


@pytest.fixture
def make_flaky_store(tmp_path):
    """Async factory: ``store = await make_flaky_store(fail_section_keys=[...])``."""
    created: list[FlakyStore] = []

    async def _make(**kwargs) -> FlakyStore:
        s = FlakyStore(tmp_path / f"flaky-{len(created)}.db", **kwargs)
        await s.connect()
        created.append(s)
        return s

    return _make


@pytest.fixture
def status_waiter():
    """``await status_waiter(orchestrator, job_id, JobStatus.RUNNING)``."""
    return wait_for_status


@pytest.fixture
def until():
    """``await until(lambda: condition)`` — poll a predicate with a timeout."""
    return wait_until
