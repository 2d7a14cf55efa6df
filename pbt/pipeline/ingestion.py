"""Ingestion pool: copies, transcodes and registers discovered files.

`parallel_connections` workers pull the next index from a shared FileCursor,
so the discovered list is partitioned without overlap and each file is claimed
exactly once. A worker checks the batch pause token before every claim; a
file already claimed is always finished, never abandoned midway.

Per-file outcome is exactly one of FileIngested, FileSkipped or FileFailed.
"""

import concurrent.futures
import gc
import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pbt.config.models import BatchOptions, StorageConfig
from pbt.domain.events import FileIngested, FileSkipped, FileFailed
from pbt.domain.models import AnalysisTask, ImageRecord
from pbt.domain.protocols import ImageCodec, MetadataExtractor, RecordStore
from pbt.infrastructure.event_bus import EventBus
from pbt.infrastructure.file_scanner import is_raw, mime_type
from pbt.pipeline.analysis_queue import AnalysisQueue
from pbt.pipeline.filenames import generate_safe_filename

DUPLICATE_REASON = "File already exists in database"
PREVIEW_SUFFIX = "_processed.jpg"
THUMBNAIL_SUFFIX = "_thumb.jpg"

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """A single file could not be ingested. Never fatal for the batch."""


class FileCursor:
    """Shared position in the discovered file list. Survives pause/resume."""

    def __init__(self, files: List[Path]):
        self.files = list(files)
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> Optional[Tuple[int, Path]]:
        with self._lock:
            if self._next >= len(self.files):
                return None
            index = self._next
            self._next += 1
            return index, self.files[index]

    @property
    def position(self) -> int:
        with self._lock:
            return self._next

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._next >= len(self.files)

    def remaining(self) -> int:
        with self._lock:
            return len(self.files) - self._next


class IngestionPool:
    def __init__(
        self,
        batch_id: str,
        bus: EventBus,
        store: RecordStore,
        codec: ImageCodec,
        metadata_extractor: Optional[MetadataExtractor],
        queue: AnalysisQueue,
        options: BatchOptions,
        storage: StorageConfig,
        pause_token: threading.Event,
    ):
        self.batch_id = batch_id
        self.bus = bus
        self.store = store
        self.codec = codec
        self.metadata_extractor = metadata_extractor
        self.queue = queue
        self.options = options
        self.upload_dir = Path(storage.upload_dir)
        self.preview_dir = Path(storage.preview_dir)
        self.thumbnail_dir = Path(storage.thumbnail_dir)
        self.pause_token = pause_token
        self._ingested = 0
        self._count_lock = threading.Lock()

    def ensure_storage(self):
        for directory in (self.upload_dir, self.preview_dir, self.thumbnail_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def run(self, cursor: FileCursor):
        """Drains the cursor with `parallel_connections` workers; returns when all stop."""
        workers = self.options.parallel_connections
        logger.info(
            f"INGESTION_START: batch {self.batch_id} workers={workers} remaining={cursor.remaining()}"
        )
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"ingest-{self.batch_id[:8]}"
        ) as executor:
            futures = [executor.submit(self._worker_loop, cursor) for _ in range(workers)]
            for future in concurrent.futures.as_completed(futures):
                # Worker loops catch per-file errors; anything here is a bug worth surfacing
                future.result()

        if self.pause_token.is_set() and not cursor.exhausted:
            logger.info(f"INGESTION_PAUSED: batch {self.batch_id} at {cursor.position}/{len(cursor.files)}")
        else:
            logger.info(f"INGESTION_DONE: batch {self.batch_id}")

    def _worker_loop(self, cursor: FileCursor):
        while not self.pause_token.is_set():
            claimed = cursor.claim()
            if claimed is None:
                return
            _, path = claimed
            self.process_file(path)

    def process_file(self, path: Path):
        """Ingests one file, converting any failure into a FileFailed event."""
        try:
            self.ingest(path)
        except Exception as e:
            size = 0
            try:
                size = path.stat().st_size
            except OSError:
                pass
            message = str(e) or type(e).__name__
            logger.error(f"INGEST_FAIL: {path}: {message}")
            self.bus.publish(FileFailed(
                batch_id=self.batch_id, path=path, size_bytes=size, error_message=message,
            ))

    def ingest(self, path: Path) -> Optional[ImageRecord]:
        """Runs the per-file steps. Returns the stored record, or None for a duplicate.

        Raises on failure after removing any partial outputs.
        """
        try:
            size = path.stat().st_size
        except OSError as e:
            raise IngestionError(f"Cannot access file: {e}") from e

        if self.options.skip_duplicates:
            existing = self.store.find_duplicate(path.name, size)
            if existing is not None:
                logger.info(f"INGEST_DUPLICATE: {path} matches image {existing.id}")
                self.bus.publish(FileSkipped(
                    batch_id=self.batch_id, path=path, size_bytes=size, reason=DUPLICATE_REASON,
                ))
                return None

        safe_name = generate_safe_filename(
            path.name, reserve=max(len(PREVIEW_SUFFIX), len(THUMBNAIL_SUFFIX))
        )
        stem = Path(safe_name).stem
        upload_path = self.upload_dir / safe_name
        preview_path = self.preview_dir / f"{stem}{PREVIEW_SUFFIX}"
        thumbnail_path = self.thumbnail_dir / f"{stem}{THUMBNAIL_SUFFIX}"

        try:
            shutil.copy2(path, upload_path)
            record, metadata = self._transcode_and_store(
                path, size, safe_name, upload_path, preview_path, thumbnail_path
            )
        except Exception:
            for partial in (upload_path, preview_path, thumbnail_path):
                partial.unlink(missing_ok=True)
            raise

        self.bus.publish(FileIngested(batch_id=self.batch_id, path=path, size_bytes=size, image=record))
        self.queue.enqueue(AnalysisTask(
            image_id=record.id,
            image_path=preview_path,
            batch_id=self.batch_id,
            metadata=metadata,
        ))
        logger.info(f"INGEST_OK: {path.name} -> image {record.id} ({record.width}x{record.height})")

        # The preview feeds analysis from here on; the full-size copy is no longer needed
        try:
            upload_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove upload copy {upload_path}: {e}")

        self._count_success()
        return record

    def _transcode_and_store(
        self,
        path: Path,
        size: int,
        safe_name: str,
        upload_path: Path,
        preview_path: Path,
        thumbnail_path: Path,
    ) -> Tuple[ImageRecord, Optional[Dict[str, Any]]]:
        source = upload_path
        if is_raw(upload_path):
            logger.debug(f"RAW_PREVIEW: extracting from {path.name}")
            source = self.codec.extract_embedded_preview(upload_path)

        width, height = self.codec.dimensions(source)
        preview_path.write_bytes(
            self.codec.resize(source, self.options.analysis_image_size, self.options.quality)
        )
        thumbnail_path.write_bytes(
            self.codec.resize(source, self.options.thumbnail_size, self.options.quality)
        )

        metadata = self._extract_metadata(upload_path)

        record = ImageRecord(
            filename=safe_name,
            original_name=path.name,
            file_path=str(upload_path),
            original_path=str(path),
            thumbnail_path=str(thumbnail_path),
            preview_path=str(preview_path),
            file_size=size,
            mime_type=mime_type(path),
            width=width,
            height=height,
        )
        image_id = self.store.insert_image(record)

        if metadata:
            try:
                self.store.insert_metadata(image_id, metadata)
            except Exception as e:
                logger.warning(f"Failed to store metadata for image {image_id}: {e}")

        stored = self.store.get_image(image_id)
        if stored is None:
            stored = record.model_copy(update={"id": image_id})
        return stored, metadata

    def _extract_metadata(self, path: Path) -> Optional[Dict[str, Any]]:
        if self.metadata_extractor is None:
            return None
        try:
            return self.metadata_extractor.parse(path)
        except Exception as e:
            logger.warning(f"Metadata extraction failed for {path.name}: {e}")
            return None

    def _count_success(self):
        if not self.options.gc_every:
            return
        with self._count_lock:
            self._ingested += 1
            due = self._ingested % self.options.gc_every == 0
        if due:
            collected = gc.collect()
            logger.debug(f"GC: collected {collected} objects after {self._ingested} files")
