import logging
import threading
from typing import Dict, Optional
from pbt.infrastructure.event_bus import EventBus
from pbt.domain.models import (
    ALLOWED_TRANSITIONS, BatchJob, BatchResult, BatchStatus, ErrorRecord, ErrorType,
    ImageRecord, ImageStatus, utc_now,
)
from pbt.domain.events import (
    DiscoveryFinished, PhaseChanged, BatchStatusChanged,
    FileIngested, FileSkipped, FileFailed,
    AnalysisQueued, AnalysisStarted, AnalysisCompleted,
    AnalysisRetrying, AnalysisRequeued, AnalysisFailed,
)
from pbt.pipeline.metrics import MetricsTracker, memory_snapshot

logger = logging.getLogger(__name__)


class BatchTracker:
    """Subscribes to a batch's EventBus and owns every write to its BatchResult.

    Workers on any thread publish events; handlers run under one lock, so each
    counter group (processed/successful/..., pending/active/...) moves in a
    single step and snapshots are always internally consistent.
    """

    def __init__(self, bus: EventBus, job: BatchJob, metrics: Optional[MetricsTracker] = None):
        self.bus = bus
        self.job = job
        self.result: BatchResult = job.result
        self.metrics = metrics or MetricsTracker()
        self._lock = threading.RLock()
        self._images: Dict[int, ImageRecord] = {}
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(DiscoveryFinished, self.on_discovery_finished)
        self.bus.subscribe(PhaseChanged, self.on_phase_changed)
        self.bus.subscribe(BatchStatusChanged, self.on_status_changed)
        self.bus.subscribe(FileIngested, self.on_file_ingested)
        self.bus.subscribe(FileSkipped, self.on_file_skipped)
        self.bus.subscribe(FileFailed, self.on_file_failed)
        self.bus.subscribe(AnalysisQueued, self.on_analysis_queued)
        self.bus.subscribe(AnalysisStarted, self.on_analysis_started)
        self.bus.subscribe(AnalysisCompleted, self.on_analysis_completed)
        self.bus.subscribe(AnalysisRetrying, self.on_analysis_retrying)
        self.bus.subscribe(AnalysisRequeued, self.on_analysis_requeued)
        self.bus.subscribe(AnalysisFailed, self.on_analysis_failed)

    # -- reads ---------------------------------------------------------------

    def snapshot(self) -> BatchResult:
        with self._lock:
            return self.result.model_copy(deep=True)

    def job_snapshot(self) -> BatchJob:
        with self._lock:
            return self.job.model_copy(deep=True)

    @property
    def status(self) -> BatchStatus:
        with self._lock:
            return self.result.status

    def set_pause_requested(self, value: bool):
        with self._lock:
            self.result.pause_requested = value

    # -- lifecycle -----------------------------------------------------------

    def on_discovery_finished(self, event: DiscoveryFinished):
        with self._lock:
            self.result.total_files = event.files_found

    def on_phase_changed(self, event: PhaseChanged):
        with self._lock:
            self.result.current_phase = event.phase

    def on_status_changed(self, event: BatchStatusChanged):
        with self._lock:
            current = self.result.status
            if event.status == current:
                return
            if event.status not in ALLOWED_TRANSITIONS[current]:
                logger.warning(
                    f"STATUS_IGNORED: batch {self.result.batch_id} {current.value} -> {event.status.value}"
                )
                return

            self.result.status = event.status
            if event.status == BatchStatus.PAUSED:
                self.metrics.pause()
            elif event.status == BatchStatus.PROCESSING:
                self.metrics.resume()
                self.result.pause_requested = False
            else:
                self.metrics.pause()
                self.result.pause_requested = False
                self.result.end_time = utc_now()
                self.result.estimated_time_remaining = None

            if event.error_message:
                self.result.errors.append(ErrorRecord(
                    file=event.source or str(self.job.folder_path),
                    error=event.error_message,
                    type=ErrorType.PROCESSING,
                ))

    # -- ingestion -----------------------------------------------------------

    def _after_file(self, size_bytes: int):
        self.result.processed_files += 1
        self.metrics.record(size_bytes)
        self.result.processing_rate = self.metrics.rate_per_minute()
        remaining = self.result.total_files - self.result.processed_files
        self.result.estimated_time_remaining = self.metrics.eta(remaining)
        self.result.memory_usage = memory_snapshot()

    def on_file_ingested(self, event: FileIngested):
        with self._lock:
            self.result.successful_files += 1
            record = event.image.model_copy()
            self.result.processed_images.append(record)
            if record.id is not None:
                self._images[record.id] = record
            self._after_file(event.size_bytes)

    def on_file_skipped(self, event: FileSkipped):
        with self._lock:
            self.result.duplicate_files += 1
            self.result.errors.append(ErrorRecord(
                file=str(event.path), error=event.reason, type=ErrorType.DUPLICATE,
            ))
            self._after_file(event.size_bytes)

    def on_file_failed(self, event: FileFailed):
        with self._lock:
            self.result.error_files += 1
            self.result.errors.append(ErrorRecord(
                file=str(event.path), error=event.error_message, type=ErrorType.PROCESSING,
            ))
            self._after_file(event.size_bytes)

    # -- analysis ------------------------------------------------------------

    def _set_image_status(self, image_id: int, status: ImageStatus, error: Optional[str] = None):
        record = self._images.get(image_id)
        if record is not None:
            record.status = status
            record.error_message = error
            record.processed_at = utc_now()

    def on_analysis_queued(self, event: AnalysisQueued):
        with self._lock:
            self.result.pending_analysis += 1

    def on_analysis_started(self, event: AnalysisStarted):
        with self._lock:
            self.result.pending_analysis -= 1
            self.result.active_analysis += 1
            self._set_image_status(event.task.image_id, ImageStatus.PROCESSING)

    def on_analysis_completed(self, event: AnalysisCompleted):
        with self._lock:
            self.result.active_analysis -= 1
            self.result.completed_analysis += 1
            self._set_image_status(event.task.image_id, ImageStatus.COMPLETED)

    def on_analysis_retrying(self, event: AnalysisRetrying):
        with self._lock:
            self.result.active_analysis -= 1
            self.result.retrying_files += 1

    def on_analysis_requeued(self, event: AnalysisRequeued):
        with self._lock:
            self.result.retrying_files -= 1
            self.result.pending_analysis += 1

    def on_analysis_failed(self, event: AnalysisFailed):
        with self._lock:
            self.result.active_analysis -= 1
            self.result.failed_analysis += 1
            self.result.errors.append(ErrorRecord(
                file=f"Image ID: {event.task.image_id}",
                error=event.error_message,
                type=ErrorType.RETRY_EXHAUSTED,
                retry_count=event.task.retry_count,
            ))
            self._set_image_status(event.task.image_id, ImageStatus.ERROR, event.error_message)
