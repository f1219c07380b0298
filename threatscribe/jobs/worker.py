"""SectionWorker — produces exactly one persisted Section for one descriptor.

Event sequence per section (progress never decreases):

    worker_start(0) → worker_progress(10, generating)
      ok:       → worker_progress(90, saving) → worker_complete(100) → content
      fallback: → worker_error → worker_progress(90) → worker_complete(100) → content

Generation problems never escape the worker; they become fallback content.
Persistence gets one retry with fallback text, after which the outcome is
returned unpersisted and the orchestrator fails the job.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from threatscribe.jobs.bus import BusRegistry
from threatscribe.models.events import EventKind, JobEvent
from threatscribe.models.jobs import Job, Section, SectionDescriptor
from threatscribe.research.sections import fallback_content
from threatscribe.research.store import JobStore
from threatscribe.tools.openrouter import ContentGenerator

logger = structlog.get_logger().bind(component="jobs.worker")


@dataclass
class SectionOutcome:
    descriptor: SectionDescriptor
    section: Section | None
    is_fallback: bool
    error: str | None = None

    @property
    def persisted(self) -> bool:
        return self.section is not None


class SectionWorker:
    """One section of one job run.

    Args:
        job:       The job, as read at the start of the run (topic, depth, run).
        descriptor: Which section to produce.
        store:     Where the Section is persisted.
        registry:  Bus registry for progress events.
        generator: Content generator, or None for fallback-only.
        cancel_event: The run's cancellation token; checked before generating.
    """

    def __init__(
        self,
        job: Job,
        descriptor: SectionDescriptor,
        *,
        store: JobStore,
        registry: BusRegistry,
        generator: ContentGenerator | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.job = job
        self.descriptor = descriptor
        self._store = store
        self._registry = registry
        self._generator = generator
        self._cancel_event = cancel_event

    async def run(self) -> SectionOutcome:
        d = self.descriptor
        await self._emit(EventKind.WORKER_START, f"Started: {d.title}", progress=0)
        await self._emit(EventKind.WORKER_PROGRESS, "Generating content", progress=10)

        content, reason = await self._generate()
        is_fallback = reason is not None
        if is_fallback:
            content = fallback_content(self.job.topic, self.job.depth, d, reason)
            await self._emit(
                EventKind.WORKER_ERROR,
                f"Generation failed for {d.title} ({reason}); using fallback content",
                progress=10,
            )

        await self._emit(EventKind.WORKER_PROGRESS, "Saving section", progress=90)
        section, is_fallback, error = await self._persist(content, is_fallback)

        if section is None:
            await self._emit(
                EventKind.WORKER_ERROR,
                f"Section {d.title} could not be saved: {error}",
                progress=90,
            )
            return SectionOutcome(d, None, is_fallback, error)

        await self._emit(
            EventKind.WORKER_COMPLETE,
            f"Completed: {d.title}",
            progress=100,
            is_fallback=is_fallback,
        )
        await self._emit(
            EventKind.CONTENT,
            section.content,
            progress=100,
            is_fallback=is_fallback,
        )
        return SectionOutcome(d, section, is_fallback)

    async def _generate(self) -> tuple[str, str | None]:
        """Return (content, None) on success or ("", reason) for fallback."""
        if self._cancel_event is not None and self._cancel_event.is_set():
            return "", "job cancelled"
        if self._generator is None:
            return "", "generator unavailable"

        d = self.descriptor
        try:
            content = await self._generator.generate_section_content(
                self.job.topic, d.title, d.guidance, self.job.depth,
            )
        except Exception as exc:
            logger.warning(
                "section_generation_failed",
                job_id=self.job.id,
                section_key=d.key,
                error=str(exc) or type(exc).__name__,
            )
            return "", "generation failed"

        if not content or not content.strip():
            return "", "empty response"
        return content.strip(), None

    async def _persist(
        self, content: str, is_fallback: bool,
    ) -> tuple[Section | None, bool, str | None]:
        d = self.descriptor
        try:
            return await self._store.create_section(self._section(content, is_fallback)), is_fallback, None
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if is_fallback:
                logger.error("section_not_persisted", job_id=self.job.id, section_key=d.key, error=error)
                return None, True, error
            logger.warning("section_persist_retry", job_id=self.job.id, section_key=d.key, error=error)

        retry = fallback_content(self.job.topic, self.job.depth, d, "storage retry")
        try:
            return await self._store.create_section(self._section(retry, True)), True, None
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("section_not_persisted", job_id=self.job.id, section_key=d.key, error=error)
            return None, True, error

    def _section(self, content: str, is_fallback: bool) -> Section:
        return Section(
            job_id=self.job.id,
            section_key=self.descriptor.key,
            title=self.descriptor.title,
            content=content,
            is_fallback=is_fallback,
            run_number=self.job.run_number,
        )

    async def _emit(self, kind: EventKind, text: str, **fields) -> None:
        await self._registry.publish(
            self.job.id,
            JobEvent(
                kind=kind,
                job_id=self.job.id,
                text=text,
                section_key=self.descriptor.key,
                section_title=self.descriptor.title,
                run_number=self.job.run_number,
                **fields,
            ),
        )
