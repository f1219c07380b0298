"""JobOrchestrator — lifecycle of research jobs.

State machine:

    submitted ──start──▶ running ──▶ completed | error | cancelled
        ▲                                      │
        └──────── resume (new run) ◀───────────┘   (cancelled / error / paused)

Every transition is a compare-and-set in the store, so concurrent callers
(a second ``start``, a ``cancel`` racing completion) cannot both win. A run
that loses the race to a local ``cancel`` publishes nothing further; when the
status was changed by another process sharing the store, the run replays it
as the job's terminal event so local observers are never left waiting.

Fan-out:
    ``start`` launches one SectionWorker per descriptor and waits for all of
    them with ``asyncio.gather(..., return_exceptions=True)``. Workers never
    raise; unpersisted outcomes fail the job at that barrier.

Detached execution:
    ``submit`` and ``resume`` schedule ``start`` as an asyncio Task. The
    orchestrator holds the task until it finishes; ``wait`` awaits it and
    ``shutdown`` cancels whatever is left.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from functools import partial

import structlog
from pydantic import ValidationError

from threatscribe.jobs.bus import BusRegistry, QueueSink
from threatscribe.jobs.errors import InvalidJobRequest, InvalidTransition, JobNotFound
from threatscribe.jobs.worker import SectionOutcome, SectionWorker
from threatscribe.models.events import EventKind, JobEvent
from threatscribe.models.jobs import (
    RESUMABLE_STATUSES,
    Job,
    JobStatus,
    JobSubmission,
    Section,
    SectionDescriptor,
)
from threatscribe.research.report import build_full_report
from threatscribe.research.sections import (
    DEFAULT_SECTIONS,
    fallback_content,
    static_outline,
    validate_descriptors,
)
from threatscribe.research.store import JobStore, StoreError
from threatscribe.tools.openrouter import ContentGenerator
from threatscribe.utils import bind_job_context, clear_job_context

logger = structlog.get_logger().bind(component="jobs.orchestrator")

_CANCELLABLE_STARTED = tuple(
    s for s in JobStatus if s not in (JobStatus.CANCELLED, JobStatus.SUBMITTED)
)


class _RunFailed(Exception):
    """Orchestrator-level failure of one run."""


class JobOrchestrator:
    """Submits, runs, cancels and resumes research jobs.

    Usage:
        orchestrator = JobOrchestrator(store, BusRegistry(), generator)
        job = await orchestrator.submit("Ransomware trends", depth=3)
        async for event in orchestrator.stream(job.id):
            ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        registry: BusRegistry | None = None,
        generator: ContentGenerator | None = None,
        *,
        descriptors: Sequence[SectionDescriptor] = DEFAULT_SECTIONS,
        observer_queue_size: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else BusRegistry()
        self.generator = generator
        self.descriptors = validate_descriptors(descriptors)
        self._queue_size = observer_queue_size
        # A resumed job can have its new run and the stale cancelled run in flight at once.
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._cancel_tokens: dict[str, asyncio.Event] = {}
        # (job_id, run_number) pairs whose cancellation this process already announced.
        self._announced: set[tuple[str, int]] = set()

    @property
    def active_jobs(self) -> list[str]:
        return list(self._tasks)

    # ── Submission ────────────────────────────────────────────────────────

    async def submit(self, topic: str, depth: int = 3) -> Job:
        """Validate, persist in ``submitted`` and schedule processing.

        Returns as soon as the record exists; processing happens in a
        background task.

        Raises:
            InvalidJobRequest: bad topic or depth (nothing is persisted).
            StoreError: the record could not be created.
        """
        try:
            request = JobSubmission(topic=topic, depth=depth)
        except ValidationError as exc:
            raise InvalidJobRequest.from_validation(exc) from exc

        job = await self.store.create_job(Job(topic=request.topic, depth=request.depth))
        self.registry.ensure(job.id)
        self._launch(job.id)
        return job

    def _launch(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.start(job_id), name=f"job-{job_id[:8]}")
        self._tasks.setdefault(job_id, set()).add(task)
        task.add_done_callback(partial(self._forget, job_id))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(job_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("job_task_crashed", job_id=job_id, error=str(task.exception()))

    # ── Processing ────────────────────────────────────────────────────────

    async def start(self, job_id: str) -> bool:
        """Run one job from ``submitted`` to a finished status.

        Returns:
            False if the job was not in ``submitted`` (someone else started
            it, or it was cancelled first); True once the run has finished.

        Raises:
            JobNotFound: unknown job ID.
        """
        try:
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)
            started = await self.store.update_job_status(
                job_id, JobStatus.RUNNING,
                expected=[JobStatus.SUBMITTED], run_number=job.run_number,
            )
        except StoreError as exc:
            # No status can be written; observers still get a terminal event.
            await self._publish(job_id, EventKind.ERROR, f"Job processing failed: {exc}")
            raise
        if not started:
            logger.info("start_skipped", job_id=job_id, status=job.status.value)
            return False

        run = job.run_number
        token = asyncio.Event()
        self._cancel_tokens[job_id] = token
        bind_job_context(job_id, run)
        try:
            await self._run(job, token)
        except _RunFailed as exc:
            await self._fail(job_id, run, str(exc))
        except asyncio.CancelledError:
            logger.warning("job_interrupted")
            await self._fail(job_id, run, "interrupted")
            raise
        except Exception as exc:
            logger.exception("job_failed", error=str(exc))
            await self._fail(job_id, run, str(exc) or type(exc).__name__)
        finally:
            if self._cancel_tokens.get(job_id) is token:
                del self._cancel_tokens[job_id]
            self._announced.discard((job_id, run))
            clear_job_context()
        return True

    async def _run(self, job: Job, token: asyncio.Event) -> None:
        run = job.run_number
        logger.info("job_started", topic=job.topic, depth=job.depth)
        await self._publish(job.id, EventKind.STATUS_UPDATE, "Job started processing",
                            progress=0, run_number=run)

        outline = await self._outline(job)
        await self._publish(job.id, EventKind.OUTLINE, outline, run_number=run)

        outcomes = await self._fan_out(job, token)
        failed = [o for o in outcomes if not o.persisted]
        if failed:
            keys = ", ".join(o.descriptor.key for o in failed)
            raise _RunFailed(f"{len(failed)} section(s) could not be saved: {keys}")

        sections = await self.store.get_sections_by_job(job.id, run_number=run)
        report = build_full_report(job, sections, self.descriptors)

        completed = await self.store.update_job_status(
            job.id, JobStatus.COMPLETED, expected=[JobStatus.RUNNING], run_number=run,
        )
        if not completed:
            await self._close_superseded(job.id, run)
            return

        fallbacks = sum(1 for o in outcomes if o.is_fallback)
        logger.info("job_completed", sections=len(sections), fallbacks=fallbacks)
        await self._publish(
            job.id, EventKind.JOB_COMPLETE, "Research completed successfully",
            progress=100, full_report=report, run_number=run,
        )

    async def _outline(self, job: Job) -> str:
        if self.generator is not None:
            try:
                return await self.generator.generate_outline(job.topic, job.depth)
            except Exception as exc:
                logger.warning("outline_generation_failed", error=str(exc) or type(exc).__name__)
        return static_outline(job.topic, job.depth, self.descriptors)

    async def _fan_out(self, job: Job, token: asyncio.Event) -> list[SectionOutcome]:
        workers = [
            SectionWorker(
                job, d,
                store=self.store,
                registry=self.registry,
                generator=self.generator,
                cancel_event=token,
            )
            for d in self.descriptors
        ]
        results = await asyncio.gather(*(w.run() for w in workers), return_exceptions=True)

        outcomes: list[SectionOutcome] = []
        for worker, result in zip(workers, results):
            if isinstance(result, BaseException):
                logger.error("section_worker_crashed", section_key=worker.descriptor.key,
                             error=str(result) or type(result).__name__)
                outcomes.append(SectionOutcome(worker.descriptor, None, True, str(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def _fail(self, job_id: str, run: int, message: str) -> None:
        """Best-effort ``running → error`` plus an ``error`` event."""
        try:
            updated = await self.store.update_job_status(
                job_id, JobStatus.ERROR,
                expected=[JobStatus.RUNNING], run_number=run, error=message,
            )
        except Exception as exc:
            logger.error("error_status_not_saved", error=str(exc))
            updated = True
        if not updated:
            await self._close_superseded(job_id, run)
            return
        await self._publish(job_id, EventKind.ERROR, f"Job processing failed: {message}",
                            run_number=run)

    async def _close_superseded(self, job_id: str, run: int) -> None:
        """Give observers a terminal event for a run whose status moved under it.

        A ``cancel`` from this process has announced itself already. Anything
        else (another process sharing the store) has not, so the stored status
        is replayed onto the local bus.
        """
        if (job_id, run) in self._announced:
            logger.info("job_run_superseded", announced=True)
            return
        try:
            job = await self.store.get_job(job_id)
        except StoreError as exc:
            logger.error("superseded_status_unreadable", error=str(exc))
            job = None

        logger.info("job_run_superseded", announced=False,
                    status=job.status.value if job is not None else None)
        if job is not None and job.status == JobStatus.ERROR and job.run_number == run:
            await self._publish(job_id, EventKind.ERROR,
                                f"Job processing failed: {job.error or 'unknown error'}",
                                run_number=run)
        else:
            await self._publish(job_id, EventKind.CANCELLED, "Job has been cancelled",
                                run_number=run)

    # ── Control ───────────────────────────────────────────────────────────

    async def cancel(self, job_id: str) -> Job:
        """Move a job to ``cancelled`` and signal its running workers.

        A run cancelled before it started gets its fallback sections written
        here, since no worker will ever run for it. Cancelling an
        already-cancelled job is a no-op.

        Raises:
            JobNotFound: unknown job ID.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status == JobStatus.CANCELLED:
            return job

        unstarted = job.status == JobStatus.SUBMITTED and await self.store.update_job_status(
            job_id, JobStatus.CANCELLED,
            expected=[JobStatus.SUBMITTED], run_number=job.run_number,
        )
        if unstarted:
            await self._fill_unstarted_run(job)
            changed = True
        else:
            # Recorded before the write: the run may notice the new status first.
            run_key = (job_id, job.run_number)
            if job.status in (JobStatus.SUBMITTED, JobStatus.RUNNING):
                self._announced.add(run_key)
            changed = await self.store.update_job_status(
                job_id, JobStatus.CANCELLED, expected=_CANCELLABLE_STARTED,
            )
            if not changed:
                self._announced.discard(run_key)
        if not changed:
            return await self.get_job(job_id)

        token = self._cancel_tokens.get(job_id)
        if token is not None:
            token.set()
        logger.info("job_cancelled", job_id=job_id, previous=job.status.value)
        await self._publish(job_id, EventKind.CANCELLED, "Job has been cancelled",
                            run_number=job.run_number)
        return await self.get_job(job_id)

    async def _fill_unstarted_run(self, job: Job) -> None:
        """Persist one fallback Section per descriptor for a run that never started."""
        for descriptor in self.descriptors:
            section = Section(
                job_id=job.id,
                section_key=descriptor.key,
                title=descriptor.title,
                content=fallback_content(job.topic, job.depth, descriptor, "job cancelled"),
                is_fallback=True,
                run_number=job.run_number,
            )
            try:
                await self.store.create_section(section)
            except StoreError as exc:
                logger.error("section_not_persisted", job_id=job.id,
                             section_key=descriptor.key, error=str(exc))

    async def resume(self, job_id: str) -> Job:
        """Start a fresh run of a cancelled, failed or paused job.

        All sections are regenerated; rows of earlier runs are kept.

        Raises:
            JobNotFound: unknown job ID.
            InvalidTransition: the job is not in a resumable status.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status not in RESUMABLE_STATUSES:
            raise InvalidTransition(f"Cannot resume job {job_id} from status '{job.status.value}'")

        resumed = await self.store.update_job_status(
            job_id, JobStatus.SUBMITTED,
            expected=RESUMABLE_STATUSES, run_number=job.run_number, bump_run=True,
        )
        if not resumed:
            raise InvalidTransition(f"Job {job_id} changed status while resuming")

        run = job.run_number + 1
        logger.info("job_resumed", job_id=job_id, run=run)
        await self._publish(job_id, EventKind.RESUMED, "Job has been resumed", run_number=run)
        self._launch(job_id)
        return await self.get_job(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait for the job's in-flight tasks (if any), then return the job."""
        tasks = list(self._tasks.get(job_id, ()))
        if tasks:
            await asyncio.wait_for(asyncio.shield(asyncio.gather(*tasks)), timeout)
        return await self.get_job(job_id)

    async def shutdown(self, *, close_store: bool = True) -> None:
        """Cancel outstanding job tasks and close collaborators.

        Interrupted runs are marked ``error`` ("interrupted") so they can be
        resumed later.
        """
        tasks = [task for job_tasks in self._tasks.values() for task in job_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("jobs_abandoned", count=len(tasks))
        if self.generator is not None:
            await self.generator.close()
        if close_store:
            await self.store.close()

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def get_sections(
        self, job_id: str, run_number: int | None = None, *, all_runs: bool = False,
    ) -> list[Section]:
        await self.get_job(job_id)
        return await self.store.get_sections_by_job(job_id, run_number, all_runs=all_runs)

    async def get_history(self, limit: int | None = None) -> list[Job]:
        return await self.store.get_job_history(limit)

    # ── Observation ───────────────────────────────────────────────────────

    async def stream(self, job_id: str) -> AsyncIterator[JobEvent]:
        """Yield the job's live events, starting with ``connected``.

        Stops after a terminal event. For a job that has already finished,
        only the ``connected`` hello is yielded; read its sections instead.
        """
        await self.get_job(job_id)
        sink = QueueSink(self._queue_size)
        if not await self.registry.subscribe(job_id, sink):
            return
        try:
            yield await sink.get()
            job = await self.get_job(job_id)
            if not job.is_active and sink.pending == 0:
                return
            async for event in sink:
                yield event
                if event.is_terminal:
                    return
        finally:
            self.registry.unsubscribe(job_id, sink)
            sink.close()

    async def _publish(self, job_id: str, kind: EventKind, text: str, **fields) -> int:
        return await self.registry.publish(job_id, JobEvent(kind=kind, job_id=job_id, text=text, **fields))
