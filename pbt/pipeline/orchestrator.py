"""Batch orchestrator: phase controller, pause/resume and the control surface.

Each batch runs on a runner thread from a bounded pool and walks the phases

    discovery -> uploading -> analysis -> finalizing

Ingestion and analysis overlap: the analysis drainer starts with the uploading
phase and consumes tasks as soon as the ingestion workers enqueue them. The
batch moves to `finalizing` only when the cursor is exhausted, the queue is
empty and nothing is in flight.

Pause is cooperative. `pause_batch` sets the batch's pause token; workers stop
at their next checkpoint (before claiming a file, before popping an analysis
group, after a retry delay). Once both pools have returned with work left, the
batch is marked paused. `resume_batch` re-submits the runner, which continues
with the same cursor and queue.

All counters live in the batch's BatchResult and are written only by its
BatchTracker, which applies events published on the batch's EventBus.
"""

import concurrent.futures
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pbt.config.models import AppConfig, BatchOptions
from pbt.domain.events import BatchStatusChanged, DiscoveryFinished, DiscoveryStarted, PhaseChanged
from pbt.domain.models import BatchJob, BatchPhase, BatchResult, BatchStatus, TERMINAL_STATUSES
from pbt.domain.protocols import AnalysisProvider, ImageCodec, MetadataExtractor, RecordStore
from pbt.infrastructure.event_bus import EventBus
from pbt.infrastructure.file_scanner import DiscoveryError, FileScanner
from pbt.pipeline.analysis_queue import AnalysisQueue
from pbt.pipeline.ingestion import FileCursor, IngestionPool
from pbt.pipeline.metrics import format_duration
from pbt.pipeline.registry import BatchRun, JobRegistry
from pbt.pipeline.tracker import BatchTracker

BatchOptionsInput = Union[BatchOptions, Dict[str, Any], None]


class Orchestrator:
    """Runs photo batches end to end and exposes their control surface.

    Args:
        config: AppConfig; `batch` supplies option defaults, `storage` the output dirs.
        record_store: persistence for image, metadata and analysis records.
        codec: resize / RAW preview extraction.
        provider: content analysis; raises on failure.
        metadata_extractor: optional; failures are never fatal.
        file_scanner: defaults to a FileScanner over `general.extensions`.
        sleep: used for retry delays and rate limiting (tests pass a no-op).
    """

    def __init__(
        self,
        config: AppConfig,
        record_store: RecordStore,
        codec: ImageCodec,
        provider: AnalysisProvider,
        metadata_extractor: Optional[MetadataExtractor] = None,
        file_scanner: Optional[FileScanner] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.record_store = record_store
        self.codec = codec
        self.provider = provider
        self.metadata_extractor = metadata_extractor
        self.file_scanner = file_scanner or FileScanner(config.general.extensions)
        self.registry = JobRegistry()
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._closed = False
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.general.max_active_batches,
            thread_name_prefix="batch",
        )

    # -- control surface -----------------------------------------------------

    def start_batch(self, folder_path: Union[str, Path], options: BatchOptionsInput = None) -> str:
        """Registers a batch and starts it in the background. Returns its id."""
        if self._closed:
            raise RuntimeError("Orchestrator has been shut down")

        resolved = self._resolve_options(options)
        batch_id = str(uuid.uuid4())
        job = BatchJob(
            id=batch_id,
            folder_path=Path(folder_path),
            options=resolved,
            result=BatchResult(batch_id=batch_id),
        )

        bus = EventBus()
        pause_token = threading.Event()
        tracker = BatchTracker(bus, job)
        queue = AnalysisQueue(
            batch_id, bus, self.record_store, self.provider, resolved, pause_token, sleep=self._sleep,
        )
        ingestion = IngestionPool(
            batch_id, bus, self.record_store, self.codec, self.metadata_extractor,
            queue, resolved, self.config.storage, pause_token,
        )
        run = BatchRun(job, bus, tracker, queue, ingestion, pause_token)
        self.registry.add(run)

        self.logger.info(
            f"BATCH_START: {batch_id} folder={job.folder_path} "
            f"parallel={resolved.parallel_connections} analysis={resolved.max_concurrent_analysis} "
            f"retries={resolved.max_retries}"
        )
        self._submit(run)
        return batch_id

    def get_status(self, batch_id: str) -> Optional[BatchResult]:
        run = self.registry.get(batch_id)
        if run is None:
            return None
        return run.tracker.snapshot()

    def list_batches(self) -> List[BatchJob]:
        return [run.tracker.job_snapshot() for run in self.registry]

    def pause_batch(self, batch_id: str) -> bool:
        """Requests a pause. Valid only while processing."""
        run = self.registry.get(batch_id)
        if run is None:
            return False
        with run.lock:
            if run.tracker.status != BatchStatus.PROCESSING:
                return False
            run.pause_token.set()
            run.tracker.set_pause_requested(True)
        self.logger.info(f"PAUSE_REQUESTED: batch {batch_id}")
        return True

    def resume_batch(self, batch_id: str) -> bool:
        """Resumes a paused batch from its cursor and queue. Valid only from paused."""
        run = self.registry.get(batch_id)
        if run is None:
            return False
        with run.lock:
            if run.tracker.status != BatchStatus.PAUSED:
                return False
            run.pause_token.clear()
            run.bus.publish(BatchStatusChanged(batch_id=batch_id, status=BatchStatus.PROCESSING))
            self._submit(run)
        self.logger.info(f"BATCH_RESUMED: {batch_id}")
        return True

    def delete_batch(self, batch_id: str) -> bool:
        """Stops the batch cooperatively and purges it from the registry."""
        run = self.registry.remove(batch_id)
        if run is None:
            return False
        with run.lock:
            run.pause_token.set()
            future = run.future
        if future is not None:
            # Fires immediately when the runner has already returned
            future.add_done_callback(lambda _: run.release())
        else:
            run.release()
        self.logger.info(f"BATCH_DELETED: {batch_id}")
        return True

    def clear_completed_batches(self) -> int:
        """Removes completed and error batches. Returns how many were removed."""
        removed = 0
        for run in self.registry:
            if run.tracker.status in TERMINAL_STATUSES:
                if self.registry.remove(run.id) is not None:
                    run.release()
                    removed += 1
        if removed:
            self.logger.info(f"CLEAR: removed {removed} finished batches")
        return removed

    def wait(self, batch_id: str, timeout: Optional[float] = None) -> Optional[BatchResult]:
        """Blocks until the batch's current run settles (completed, error or paused)."""
        run = self.registry.get(batch_id)
        if run is None:
            return None
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            future = run.future
            if future is None:
                break
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                future.result(timeout=remaining)
            except concurrent.futures.TimeoutError:
                break
            if run.future is future:
                break
        return run.tracker.snapshot()

    def shutdown(self, wait: bool = True):
        """Pauses every processing batch and stops accepting new ones."""
        self._closed = True
        for run in self.registry:
            self.pause_batch(run.id)
        self._executor.shutdown(wait=wait)
        self.logger.info("Orchestrator shut down")

    # -- runner --------------------------------------------------------------

    def _resolve_options(self, options: BatchOptionsInput) -> BatchOptions:
        """Per-batch options layered over the configured defaults."""
        if options is None:
            return self.config.batch.model_copy()
        if isinstance(options, BatchOptions):
            overrides = options.model_dump(exclude_unset=True)
        else:
            overrides = BatchOptions.model_validate(options).model_dump(exclude_unset=True)
        return BatchOptions.model_validate({**self.config.batch.model_dump(), **overrides})

    def _submit(self, run: BatchRun):
        run.future = self._executor.submit(self._run_batch, run)

    def _set_phase(self, run: BatchRun, phase: BatchPhase):
        self.logger.debug(f"PHASE: batch {run.id} -> {phase.value}")
        run.bus.publish(PhaseChanged(batch_id=run.id, phase=phase))

    def _run_batch(self, run: BatchRun):
        try:
            if run.cursor is None:
                if not self._discover(run):
                    return

            run.ingestion.ensure_storage()
            run.ingestion_done.clear()
            if run.cursor.exhausted:
                run.ingestion_done.set()
                self._set_phase(run, BatchPhase.ANALYSIS)
            else:
                self._set_phase(run, BatchPhase.UPLOADING)

            drain_errors: List[BaseException] = []
            drainer = threading.Thread(
                target=self._drain,
                args=(run, drain_errors),
                name=f"drain-{run.id[:8]}",
                daemon=True,
            )
            drainer.start()
            try:
                if not run.cursor.exhausted:
                    run.ingestion.run(run.cursor)
            finally:
                run.ingestion_done.set()

            if run.cursor.exhausted and not run.pause_token.is_set():
                self._set_phase(run, BatchPhase.ANALYSIS)
            drainer.join()
            if drain_errors:
                raise drain_errors[0]

            with run.lock:
                if run.pause_token.is_set() and run.has_remaining_work():
                    run.bus.publish(BatchStatusChanged(batch_id=run.id, status=BatchStatus.PAUSED))
                    snapshot = run.tracker.snapshot()
                    self.logger.info(
                        f"BATCH_PAUSED: {run.id} processed={snapshot.processed_files}/{snapshot.total_files} "
                        f"pending_analysis={snapshot.pending_analysis}"
                    )
                    return

            self._set_phase(run, BatchPhase.FINALIZING)
            self._finish(run, BatchStatus.COMPLETED)
        except DiscoveryError as e:
            self.logger.error(f"DISCOVERY_FAILED: batch {run.id}: {e}")
            self._finish(run, BatchStatus.ERROR, error_message=str(e))
        except Exception as e:
            self.logger.exception(f"BATCH_FAILED: batch {run.id}: {e}")
            self._finish(run, BatchStatus.ERROR, error_message=f"Batch processing failed: {e}")

    def _discover(self, run: BatchRun) -> bool:
        """Discovery phase. Returns False when the batch ended here (empty folder)."""
        self._set_phase(run, BatchPhase.DISCOVERY)
        run.bus.publish(DiscoveryStarted(batch_id=run.id, directory=run.job.folder_path))
        files = self.file_scanner.discover(run.job.folder_path)
        run.cursor = FileCursor(files)
        run.bus.publish(DiscoveryFinished(batch_id=run.id, files_found=len(files)))

        if not files:
            self.logger.info(f"BATCH_EMPTY: {run.id} no supported files in {run.job.folder_path}")
            self._set_phase(run, BatchPhase.FINALIZING)
            self._finish(run, BatchStatus.COMPLETED)
            return False
        return True

    def _drain(self, run: BatchRun, errors: List[BaseException]):
        try:
            run.queue.drain(run.ingestion_done)
        except Exception as e:
            self.logger.exception(f"Analysis drainer crashed for batch {run.id}")
            errors.append(e)
            # Unblock ingestion workers; the batch is going to error
            run.pause_token.set()

    def _finish(self, run: BatchRun, status: BatchStatus, error_message: Optional[str] = None):
        run.bus.publish(BatchStatusChanged(
            batch_id=run.id,
            status=status,
            error_message=error_message,
            source=str(run.job.folder_path) if error_message else None,
        ))
        result = run.tracker.snapshot()
        elapsed = run.tracker.metrics.elapsed_seconds()
        self.logger.info(
            f"BATCH_DONE: {run.id} status={result.status.value} "
            f"files={result.processed_files}/{result.total_files} ok={result.successful_files} "
            f"dup={result.duplicate_files} err={result.error_files} "
            f"analysis={result.completed_analysis} failed={result.failed_analysis} "
            f"in {format_duration(elapsed)}"
        )
        run.release()
