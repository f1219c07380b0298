"""JobStore — durable storage for research jobs and their sections.

Two interchangeable backends behind one interface, chosen once at
construction time by :func:`build_store`:

    PostgresJobStore — asyncpg pool (production, ``postgresql://...``)
    SqliteJobStore   — stdlib sqlite3 run in worker threads (local development)

Error contract:
    Unlike the best-effort caches elsewhere, the job store is the source of
    truth for job state, so backend failures are NOT swallowed. Every backend
    exception is logged and re-raised as :class:`StoreError`; the orchestrator
    decides whether that is fatal for the job.

Dependency injection:
    Pass ``_pool`` to PostgresJobStore to inject a pre-built pool in tests.
"""

from __future__ import annotations

import asyncio
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from threatscribe.models.jobs import Job, JobStatus, Section
from threatscribe.utils.clock import now_utc

logger = structlog.get_logger().bind(component="research.store")

_FINISHED = (JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED)

# ── DDL ──────────────────────────────────────────────────────────────────────

_DDL_POSTGRES = """
CREATE TABLE IF NOT EXISTS jobs (
    id           TEXT        PRIMARY KEY,
    topic        TEXT        NOT NULL,
    depth        INTEGER     NOT NULL,
    status       TEXT        NOT NULL DEFAULT 'submitted',
    run_number   INTEGER     NOT NULL DEFAULT 1,
    error        TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at   TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs (created_at DESC);

CREATE TABLE IF NOT EXISTS sections (
    id           TEXT        PRIMARY KEY,
    job_id       TEXT        NOT NULL REFERENCES jobs(id),
    section_key  TEXT        NOT NULL,
    title        TEXT        NOT NULL,
    content      TEXT        NOT NULL,
    is_fallback  BOOLEAN     NOT NULL DEFAULT FALSE,
    run_number   INTEGER     NOT NULL DEFAULT 1,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_sections_job_run
    ON sections (job_id, run_number, created_at);
"""

_DDL_SQLITE = """
CREATE TABLE IF NOT EXISTS jobs (
    id           TEXT    PRIMARY KEY,
    topic        TEXT    NOT NULL,
    depth        INTEGER NOT NULL,
    status       TEXT    NOT NULL DEFAULT 'submitted',
    run_number   INTEGER NOT NULL DEFAULT 1,
    error        TEXT,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL,
    started_at   TEXT,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs (created_at DESC);

CREATE TABLE IF NOT EXISTS sections (
    id           TEXT    PRIMARY KEY,
    job_id       TEXT    NOT NULL REFERENCES jobs(id),
    section_key  TEXT    NOT NULL,
    title        TEXT    NOT NULL,
    content      TEXT    NOT NULL,
    is_fallback  INTEGER NOT NULL DEFAULT 0,
    run_number   INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sections_job_run
    ON sections (job_id, run_number, created_at);
"""


class StoreError(RuntimeError):
    """A persistence call failed (connection lost, constraint violated, ...)."""


class JobStore(ABC):
    """Persistence contract consumed by the orchestrator and section workers."""

    backend: str = ""

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and create the schema. Idempotent."""

    @abstractmethod
    async def close(self) -> None:
        ...

    # ── Jobs ──────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def get_job_history(self, limit: int | None = None) -> list[Job]:
        """All jobs, newest first."""

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        run_number: int | None = None,
        bump_run: bool = False,
        error: str | None = None,
    ) -> bool:
        """Set a job's status, optionally as a compare-and-set.

        Args:
            expected:   Only apply if the current status is one of these.
            run_number: Only apply if the job is still on this run.
            bump_run:   Increment ``run_number`` (resume starts a new run).
            error:      Failure text stored with finished statuses.

        Returns:
            True if a row was updated, False if the job is missing or a
            guard did not match.
        """
        sql, params = self._status_update_sql(
            job_id, status, expected=expected, run_number=run_number,
            bump_run=bump_run, error=error,
        )
        with self._errors("update_job_status", job_id=job_id):
            updated = await self._execute_update(sql, params)
        if updated:
            logger.info(
                "job_status_updated",
                job_id=job_id,
                status=status.value,
                **({"error": error} if error else {}),
            )
        return updated

    # ── Sections ──────────────────────────────────────────────────────────

    @abstractmethod
    async def create_section(self, section: Section) -> Section:
        ...

    @abstractmethod
    async def get_sections_by_job(
        self,
        job_id: str,
        run_number: int | None = None,
        *,
        all_runs: bool = False,
    ) -> list[Section]:
        """Sections of one job, oldest first.

        Defaults to the job's current run; ``all_runs=True`` returns every
        run's rows.
        """

    # ── Shared helpers ────────────────────────────────────────────────────

    @abstractmethod
    def _placeholders(self) -> Iterator[str]:
        """Yield the backend's positional parameter markers in order."""

    @abstractmethod
    def _ts(self, value: datetime | None) -> Any:
        """Convert a timestamp into the backend's bind format."""

    @abstractmethod
    async def _execute_update(self, sql: str, params: list[Any]) -> bool:
        ...

    def _status_update_sql(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Iterable[JobStatus] | None,
        run_number: int | None,
        bump_run: bool,
        error: str | None,
    ) -> tuple[str, list[Any]]:
        ph = self._placeholders()
        now = self._ts(now_utc())
        sets = [f"status = {next(ph)}", f"updated_at = {next(ph)}"]
        params: list[Any] = [status.value, now]

        if status == JobStatus.RUNNING:
            sets += [f"started_at = {next(ph)}", "completed_at = NULL", "error = NULL"]
            params.append(now)
        elif status in _FINISHED:
            sets += [f"completed_at = {next(ph)}", f"error = {next(ph)}"]
            params += [now, error]
        if bump_run:
            sets.append("run_number = run_number + 1")

        where = [f"id = {next(ph)}"]
        params.append(job_id)
        if expected is not None:
            allowed = [s.value for s in expected]
            if not allowed:
                raise ValueError("expected must name at least one status")
            where.append(f"status IN ({', '.join(next(ph) for _ in allowed)})")
            params += allowed
        if run_number is not None:
            where.append(f"run_number = {next(ph)}")
            params.append(run_number)

        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE {' AND '.join(where)}"
        return sql, params

    @contextmanager
    def _errors(self, op: str, **context: Any) -> Iterator[None]:
        """Log and re-raise backend failures as StoreError."""
        try:
            yield
        except StoreError:
            raise
        except Exception as exc:
            logger.warning("store_op_failed", op=op, backend=self.backend, error=str(exc), **context)
            raise StoreError(f"{op} failed: {exc}") from exc


# ─────────────────────────────────────────────────────────────────────────────
# PostgreSQL
# ─────────────────────────────────────────────────────────────────────────────


class PostgresJobStore(JobStore):
    """asyncpg-backed store.

    Usage:
        store = PostgresJobStore("postgresql://localhost:5432/threatscribe")
        await store.connect()   # creates pool + runs DDL
        ...
        await store.close()
    """

    backend = "postgres"

    def __init__(self, dsn: str, *, _pool=None) -> None:
        self.dsn = dsn
        self._pool = _pool
        self._schema_created = False

    async def connect(self) -> None:
        with self._errors("connect"):
            if self._pool is None:
                import asyncpg  # type: ignore
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=5,
                    command_timeout=10,
                )
                logger.info("pg_connected", dsn=self._redacted_dsn())
            if not self._schema_created:
                await self._pool.execute(_DDL_POSTGRES)
                self._schema_created = True
                logger.debug("pg_schema_ready")

    async def close(self) -> None:
        if self._pool is not None:
            try:
                await self._pool.close()
            except Exception as exc:
                logger.warning("pg_close_failed", error=str(exc))
            self._pool = None

    def _pool_or_raise(self):
        if self._pool is None:
            raise StoreError("PostgresJobStore is not connected")
        return self._pool

    def _placeholders(self) -> Iterator[str]:
        n = 0
        while True:
            n += 1
            yield f"${n}"

    def _ts(self, value: datetime | None) -> Any:
        return value

    async def _execute_update(self, sql: str, params: list[Any]) -> bool:
        status = await self._pool_or_raise().execute(sql, *params)
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return str(status).rsplit(" ", 1)[-1] != "0"

    async def create_job(self, job: Job) -> Job:
        with self._errors("create_job", job_id=job.id):
            await self._pool_or_raise().execute(
                """
                INSERT INTO jobs
                    (id, topic, depth, status, run_number, error, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                job.id, job.topic, job.depth, job.status.value, job.run_number,
                job.error, job.created_at, job.updated_at,
            )
        logger.info("job_created", job_id=job.id, topic=job.topic, depth=job.depth)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        with self._errors("get_job", job_id=job_id):
            row = await self._pool_or_raise().fetchrow(
                "SELECT * FROM jobs WHERE id = $1", job_id,
            )
        return Job.from_row(dict(row)) if row else None

    async def get_job_history(self, limit: int | None = None) -> list[Job]:
        with self._errors("get_job_history"):
            pool = self._pool_or_raise()
            if limit is None:
                rows = await pool.fetch("SELECT * FROM jobs ORDER BY created_at DESC")
            else:
                rows = await pool.fetch(
                    "SELECT * FROM jobs ORDER BY created_at DESC LIMIT $1", limit,
                )
        return [Job.from_row(dict(r)) for r in rows]

    async def create_section(self, section: Section) -> Section:
        with self._errors("create_section", job_id=section.job_id, section_key=section.section_key):
            await self._pool_or_raise().execute(
                """
                INSERT INTO sections
                    (id, job_id, section_key, title, content, is_fallback, run_number, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                section.id, section.job_id, section.section_key, section.title,
                section.content, section.is_fallback, section.run_number, section.created_at,
            )
        logger.info(
            "section_stored",
            job_id=section.job_id,
            section_key=section.section_key,
            fallback=section.is_fallback,
        )
        return section

    async def get_sections_by_job(
        self,
        job_id: str,
        run_number: int | None = None,
        *,
        all_runs: bool = False,
    ) -> list[Section]:
        with self._errors("get_sections_by_job", job_id=job_id):
            pool = self._pool_or_raise()
            if all_runs:
                rows = await pool.fetch(
                    "SELECT * FROM sections WHERE job_id = $1 ORDER BY created_at ASC",
                    job_id,
                )
            elif run_number is not None:
                rows = await pool.fetch(
                    """
                    SELECT * FROM sections
                    WHERE job_id = $1 AND run_number = $2
                    ORDER BY created_at ASC
                    """,
                    job_id, run_number,
                )
            else:
                rows = await pool.fetch(
                    """
                    SELECT s.* FROM sections s
                    JOIN jobs j ON j.id = s.job_id AND j.run_number = s.run_number
                    WHERE s.job_id = $1
                    ORDER BY s.created_at ASC
                    """,
                    job_id,
                )
        return [Section.from_row(dict(r)) for r in rows]

    def _redacted_dsn(self) -> str:
        """Log-safe DSN (hides password if present)."""
        import re
        return re.sub(r":([^@/]+)@", ":***@", self.dsn)


# ─────────────────────────────────────────────────────────────────────────────
# SQLite
# ─────────────────────────────────────────────────────────────────────────────


class SqliteJobStore(JobStore):
    """sqlite3-backed store for local development and tests.

    sqlite3 is blocking, so every statement runs in a worker thread via
    ``asyncio.to_thread`` with its own short-lived connection; the event
    loop never blocks on disk I/O.
    """

    backend = "sqlite"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._initialized = False

    async def connect(self) -> None:
        if self._initialized:
            return
        with self._errors("connect"):
            await asyncio.to_thread(self._init_schema)
        self._initialized = True
        logger.info("sqlite_ready", path=str(self.path))

    async def close(self) -> None:
        # Connections are per-call; nothing to release.
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_DDL_SQLITE)
            conn.commit()
        finally:
            conn.close()

    def _run(self, sql: str, params: tuple, fetch: str) -> Any:
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            if fetch == "one":
                row = cursor.fetchone()
                return dict(row) if row is not None else None
            if fetch == "all":
                return [dict(r) for r in cursor.fetchall()]
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def _execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        if not self._initialized:
            raise StoreError("SqliteJobStore is not connected")
        return await asyncio.to_thread(self._run, sql, params, fetch)

    def _placeholders(self) -> Iterator[str]:
        while True:
            yield "?"

    def _ts(self, value: datetime | None) -> Any:
        return value.isoformat() if value is not None else None

    async def _execute_update(self, sql: str, params: list[Any]) -> bool:
        return await self._execute(sql, tuple(params)) > 0

    async def create_job(self, job: Job) -> Job:
        with self._errors("create_job", job_id=job.id):
            await self._execute(
                """
                INSERT INTO jobs
                    (id, topic, depth, status, run_number, error, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (job.id, job.topic, job.depth, job.status.value, job.run_number,
                 job.error, self._ts(job.created_at), self._ts(job.updated_at)),
            )
        logger.info("job_created", job_id=job.id, topic=job.topic, depth=job.depth)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        with self._errors("get_job", job_id=job_id):
            row = await self._execute("SELECT * FROM jobs WHERE id = ?", (job_id,), fetch="one")
        return Job.from_row(row) if row else None

    async def get_job_history(self, limit: int | None = None) -> list[Job]:
        with self._errors("get_job_history"):
            if limit is None:
                rows = await self._execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC", fetch="all",
                )
            else:
                rows = await self._execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,), fetch="all",
                )
        return [Job.from_row(r) for r in rows]

    async def create_section(self, section: Section) -> Section:
        with self._errors("create_section", job_id=section.job_id, section_key=section.section_key):
            await self._execute(
                """
                INSERT INTO sections
                    (id, job_id, section_key, title, content, is_fallback, run_number, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (section.id, section.job_id, section.section_key, section.title,
                 section.content, int(section.is_fallback), section.run_number,
                 self._ts(section.created_at)),
            )
        logger.info(
            "section_stored",
            job_id=section.job_id,
            section_key=section.section_key,
            fallback=section.is_fallback,
        )
        return section

    async def get_sections_by_job(
        self,
        job_id: str,
        run_number: int | None = None,
        *,
        all_runs: bool = False,
    ) -> list[Section]:
        with self._errors("get_sections_by_job", job_id=job_id):
            if all_runs:
                rows = await self._execute(
                    "SELECT * FROM sections WHERE job_id = ? ORDER BY created_at ASC",
                    (job_id,), fetch="all",
                )
            elif run_number is not None:
                rows = await self._execute(
                    """
                    SELECT * FROM sections
                    WHERE job_id = ? AND run_number = ?
                    ORDER BY created_at ASC
                    """,
                    (job_id, run_number), fetch="all",
                )
            else:
                rows = await self._execute(
                    """
                    SELECT s.* FROM sections s
                    JOIN jobs j ON j.id = s.job_id AND j.run_number = s.run_number
                    WHERE s.job_id = ?
                    ORDER BY s.created_at ASC
                    """,
                    (job_id,), fetch="all",
                )
        return [Section.from_row(r) for r in rows]


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────


def build_store(database_url: str | None = None, sqlite_path: str | Path | None = None) -> JobStore:
    """Pick the backend once, from the URL scheme.

    ``postgres://`` / ``postgresql://`` → PostgresJobStore
    ``sqlite:///path``                  → SqliteJobStore at that path
    empty                               → SqliteJobStore at ``sqlite_path``
    """
    if database_url is None or sqlite_path is None:
        from threatscribe.config import settings
        if database_url is None:
            database_url = settings.database_url
        if sqlite_path is None:
            sqlite_path = settings.sqlite_path

    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresJobStore(database_url)
    if database_url.startswith("sqlite:///"):
        return SqliteJobStore(database_url[len("sqlite:///"):])
    if database_url:
        raise ValueError(f"Unsupported database_url scheme: {database_url.split(':', 1)[0]}")
    return SqliteJobStore(sqlite_path)
