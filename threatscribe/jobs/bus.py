"""Per-job event bus — in-memory fan-out of JobEvents to live observers.

    BusRegistry  — owned map job_id → EventBus, injected into the orchestrator
    EventBus     — the observer set of one job, with ordered delivery
    QueueSink    — in-process observer backed by a bounded asyncio.Queue

Delivery semantics:
    - at-most-once, no buffering for observers that are not attached yet;
    - per-job ordering: a bus delivers one publish at a time, to a snapshot
      of its observers, so concurrent subscribe/unsubscribe never mutates
      the set being iterated;
    - an observer whose ``send`` raises is dropped on the spot and never
      retried. Other observers still receive the event.

A bus is created on first publish or subscribe and dropped from the
registry as soon as it has no observers and no attach in flight.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from threatscribe.config import settings
from threatscribe.models.events import EventKind, JobEvent

logger = structlog.get_logger().bind(component="jobs.bus")


class EventSink(Protocol):
    """A write-capable observer endpoint (SSE response, websocket, queue...)."""

    async def send(self, payload: str) -> None: ...


class ObserverClosed(ConnectionError):
    """Raised by a sink that can no longer accept events."""


class QueueSink:
    """Observer that buffers serialized events for an in-process consumer.

    A full queue means the consumer stopped reading; ``send`` then raises
    ``asyncio.QueueFull`` and the bus drops this observer.

    Usage:
        sink = QueueSink()
        await registry.subscribe(job_id, sink)
        async for event in sink:
            ...
    """

    def __init__(self, maxsize: int | None = None) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else settings.observer_queue_size
        )
        self.closed = False

    async def send(self, payload: str) -> None:
        if self.closed:
            raise ObserverClosed("observer closed")
        self._queue.put_nowait(payload)

    def close(self) -> None:
        self.closed = True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> JobEvent:
        return JobEvent.from_wire(await self._queue.get())

    def get_nowait(self) -> JobEvent:
        return JobEvent.from_wire(self._queue.get_nowait())

    def __aiter__(self) -> "QueueSink":
        return self

    async def __anext__(self) -> JobEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()


class EventBus:
    """Observer set for one job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._sinks: set[EventSink] = set()
        self._lock = asyncio.Lock()
        self._attaching = 0

    @property
    def observer_count(self) -> int:
        return len(self._sinks)

    @property
    def is_idle(self) -> bool:
        return not self._sinks and self._attaching == 0

    def __contains__(self, sink: object) -> bool:
        return sink in self._sinks

    async def attach(self, sink: EventSink) -> bool:
        """Send the ``connected`` hello, then start delivering to ``sink``.

        The hello is written under the delivery lock, so it always precedes
        the first broadcast event this observer sees.
        """
        self._attaching += 1
        try:
            hello = JobEvent(
                kind=EventKind.CONNECTED,
                job_id=self.job_id,
                text="Connected to job stream",
            )
            async with self._lock:
                try:
                    await sink.send(hello.to_wire())
                except Exception as exc:
                    logger.debug("observer_hello_failed", job_id=self.job_id, error=str(exc))
                    return False
                self._sinks.add(sink)
        finally:
            self._attaching -= 1
        logger.debug("observer_attached", job_id=self.job_id, observers=len(self._sinks))
        return True

    def detach(self, sink: EventSink) -> bool:
        if sink not in self._sinks:
            return False
        self._sinks.discard(sink)
        logger.debug("observer_detached", job_id=self.job_id, observers=len(self._sinks))
        return True

    async def broadcast(self, event: JobEvent) -> int:
        """Deliver ``event`` to every attached observer; returns the delivered count."""
        payload = event.to_wire()
        delivered = 0
        async with self._lock:
            for sink in list(self._sinks):
                try:
                    await sink.send(payload)
                except Exception as exc:
                    self._sinks.discard(sink)
                    logger.debug(
                        "observer_dropped",
                        job_id=self.job_id,
                        kind=event.kind.value,
                        error=str(exc) or type(exc).__name__,
                    )
                    continue
                delivered += 1
        return delivered


class BusRegistry:
    """Owned registry of live buses, one per job ID with observers.

    All mutation happens on the event loop thread between awaits, so the
    dict needs no lock; the per-bus lock orders deliveries.
    """

    def __init__(self) -> None:
        self._buses: dict[str, EventBus] = {}

    def __len__(self) -> int:
        return len(self._buses)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._buses

    def get(self, job_id: str) -> EventBus | None:
        return self._buses.get(job_id)

    def ensure(self, job_id: str) -> EventBus:
        bus = self._buses.get(job_id)
        if bus is None:
            bus = self._buses[job_id] = EventBus(job_id)
        return bus

    def discard_if_idle(self, job_id: str) -> bool:
        bus = self._buses.get(job_id)
        if bus is not None and bus.is_idle:
            del self._buses[job_id]
            return True
        return False

    def observer_count(self, job_id: str) -> int:
        bus = self._buses.get(job_id)
        return bus.observer_count if bus else 0

    async def publish(self, job_id: str, event: JobEvent) -> int:
        """Broadcast to the job's current observers. Zero observers is not an error."""
        bus = self.ensure(job_id)
        try:
            return await bus.broadcast(event)
        finally:
            self.discard_if_idle(job_id)

    async def subscribe(self, job_id: str, sink: EventSink) -> bool:
        """Attach ``sink``; False if it failed to accept the hello."""
        bus = self.ensure(job_id)
        try:
            return await bus.attach(sink)
        finally:
            self.discard_if_idle(job_id)

    def unsubscribe(self, job_id: str, sink: EventSink) -> bool:
        bus = self._buses.get(job_id)
        if bus is None:
            return False
        removed = bus.detach(sink)
        self.discard_if_idle(job_id)
        return removed
