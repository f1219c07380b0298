"""Job lifecycle: orchestrator, section workers and the per-job event bus."""

from .bus import BusRegistry, EventBus, EventSink, ObserverClosed, QueueSink
from .errors import InvalidJobRequest, InvalidTransition, JobNotFound
from .orchestrator import JobOrchestrator
from .worker import SectionOutcome, SectionWorker

__all__ = [
    "BusRegistry",
    "EventBus",
    "EventSink",
    "InvalidJobRequest",
    "InvalidTransition",
    "JobNotFound",
    "JobOrchestrator",
    "ObserverClosed",
    "QueueSink",
    "SectionOutcome",
    "SectionWorker",
]
