"""Domain events for the photo batch pipeline.

Ingestion and analysis workers never touch a BatchResult directly. Every state
change is published as an event on the batch's EventBus and applied by a single
BatchTracker subscriber, so counters stay consistent under concurrency.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel
from .models import BatchPhase, BatchStatus, ImageRecord, AnalysisTask


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    batch_id: str


class DiscoveryStarted(Event):
    """Emitted when the walker starts enumerating the batch folder."""

    directory: Path


class DiscoveryFinished(Event):
    """Emitted once the ordered file list is known."""

    files_found: int


class PhaseChanged(Event):
    phase: BatchPhase


class BatchStatusChanged(Event):
    """Emitted on every lifecycle transition; `error_message` set for fatal faults."""

    status: BatchStatus
    error_message: Optional[str] = None
    source: Optional[str] = None


class FileEvent(Event):
    """Base class for per-file ingestion outcomes."""

    path: Path
    size_bytes: int = 0


class FileIngested(FileEvent):
    """File copied, transcoded and persisted; an analysis task follows."""

    image: ImageRecord


class FileSkipped(FileEvent):
    """Duplicate of an existing record (name + size)."""

    reason: str


class FileFailed(FileEvent):
    """Single-file processing failure; the batch continues."""

    error_message: str


class AnalysisEvent(Event):
    """Base class for events related to a specific analysis task."""

    task: AnalysisTask


class AnalysisQueued(AnalysisEvent):
    """Task appended to the tail of the queue for the first time."""

    pass


class AnalysisStarted(AnalysisEvent):
    """Task popped from the queue and handed to a worker."""

    pass


class AnalysisCompleted(AnalysisEvent):
    pass


class AnalysisRetrying(AnalysisEvent):
    """Attempt failed; the task waits out its retry delay."""

    error_message: str
    delay_s: float


class AnalysisRequeued(AnalysisEvent):
    """Retry delay elapsed; the task is back at the tail of the queue."""

    pass


class AnalysisFailed(AnalysisEvent):
    """Retries exhausted; terminal for this image."""

    error_message: str
