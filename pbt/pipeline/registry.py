import concurrent.futures
import logging
import threading
from typing import Dict, Iterator, List, Optional

from pbt.domain.models import BatchJob
from pbt.infrastructure.event_bus import EventBus
from pbt.pipeline.analysis_queue import AnalysisQueue
from pbt.pipeline.ingestion import FileCursor, IngestionPool
from pbt.pipeline.tracker import BatchTracker

logger = logging.getLogger(__name__)


class BatchRun:
    """Everything one batch needs while it is live.

    The job and its result (owned by `tracker`) outlive the run; the queue,
    cursor and subscriptions are released once the batch is terminal or deleted.
    """

    def __init__(
        self,
        job: BatchJob,
        bus: EventBus,
        tracker: BatchTracker,
        queue: AnalysisQueue,
        ingestion: IngestionPool,
        pause_token: threading.Event,
    ):
        self.job = job
        self.bus = bus
        self.tracker = tracker
        self.queue = queue
        self.ingestion = ingestion
        self.pause_token = pause_token
        self.cursor: Optional[FileCursor] = None
        self.ingestion_done = threading.Event()
        self.future: Optional[concurrent.futures.Future] = None
        self.lock = threading.Lock()
        self.released = False

    @property
    def id(self) -> str:
        return self.job.id

    def has_remaining_work(self) -> bool:
        if self.cursor is not None and not self.cursor.exhausted:
            return True
        return not self.queue.is_idle()

    def release(self):
        """Drops per-batch tracking structures. Idempotent."""
        if self.released:
            return
        self.released = True
        self.queue.clear()
        if self.cursor is not None:
            self.cursor.files.clear()
        self.bus.clear()
        logger.debug(f"RELEASE: batch {self.id} tracking structures dropped")


class JobRegistry:
    """Thread-safe map of batch id -> BatchRun."""

    def __init__(self):
        self._runs: Dict[str, BatchRun] = {}
        self._lock = threading.Lock()

    def add(self, run: BatchRun):
        with self._lock:
            if run.id in self._runs:
                raise KeyError(f"Batch already registered: {run.id}")
            self._runs[run.id] = run

    def get(self, batch_id: str) -> Optional[BatchRun]:
        with self._lock:
            return self._runs.get(batch_id)

    def remove(self, batch_id: str) -> Optional[BatchRun]:
        with self._lock:
            return self._runs.pop(batch_id, None)

    def runs(self) -> List[BatchRun]:
        with self._lock:
            return list(self._runs.values())

    def __iter__(self) -> Iterator[BatchRun]:
        return iter(self.runs())
