import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union
from pbt.domain.models import AnalysisResult, ImageRecord, ImageStatus, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    filename TEXT NOT NULL,
    original_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    original_path TEXT NOT NULL,
    thumbnail_path TEXT NOT NULL,
    preview_path TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    width INTEGER NOT NULL DEFAULT 0,
    height INTEGER NOT NULL DEFAULT 0,
    uploaded_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'uploaded',
    error_message TEXT,
    processed_at TEXT
);
CREATE TABLE IF NOT EXISTS image_metadata (
    image_id INTEGER PRIMARY KEY REFERENCES images (id) ON DELETE CASCADE,
    data TEXT NOT NULL,
    extracted_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS analysis (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id INTEGER NOT NULL REFERENCES images (id) ON DELETE CASCADE,
    data TEXT NOT NULL,
    analysis_date TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_images_status ON images (status);
CREATE INDEX IF NOT EXISTS idx_images_name_size ON images (original_name, file_size);
CREATE INDEX IF NOT EXISTS idx_analysis_image_id ON analysis (image_id);
"""

IMAGE_COLUMNS = (
    "filename", "original_name", "file_path", "original_path", "thumbnail_path",
    "preview_path", "file_size", "mime_type", "width", "height", "uploaded_at",
    "status", "error_message", "processed_at",
)


class SqliteRecordStore:
    """Record store on a single shared sqlite3 connection, serialized by a lock."""

    def __init__(self, database_path: Union[str, Path] = ":memory:"):
        if str(database_path) != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(database_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)

    def _row_to_image(self, row: Optional[sqlite3.Row]) -> Optional[ImageRecord]:
        if row is None:
            return None
        return ImageRecord(**dict(row))

    def insert_image(self, record: ImageRecord) -> int:
        data = record.model_dump(mode="json", include=set(IMAGE_COLUMNS))
        placeholders = ", ".join("?" for _ in IMAGE_COLUMNS)
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"INSERT INTO images ({', '.join(IMAGE_COLUMNS)}) VALUES ({placeholders})",
                [data[col] for col in IMAGE_COLUMNS],
            )
            return int(cur.lastrowid)

    def get_image(self, image_id: int) -> Optional[ImageRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM images WHERE id = ?", (image_id,)).fetchone()
        return self._row_to_image(row)

    def update_image_status(
        self, image_id: int, status: ImageStatus, error_message: Optional[str] = None
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE images SET status = ?, error_message = ?, processed_at = ? WHERE id = ?",
                (ImageStatus(status).value, error_message, utc_now(), image_id),
            )

    def find_duplicate(self, original_name: str, file_size: int) -> Optional[ImageRecord]:
        """Existing non-error record with the same original name and byte size."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM images WHERE original_name = ? AND file_size = ? AND status != ? "
                "ORDER BY id LIMIT 1",
                (original_name, file_size, ImageStatus.ERROR.value),
            ).fetchone()
        return self._row_to_image(row)

    def insert_metadata(self, image_id: int, metadata: Dict[str, Any]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO image_metadata (image_id, data, extracted_at) VALUES (?, ?, ?)",
                (image_id, json.dumps(metadata, default=str), utc_now()),
            )

    def get_metadata(self, image_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM image_metadata WHERE image_id = ?", (image_id,)
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def insert_analysis(self, image_id: int, result: AnalysisResult) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO analysis (image_id, data, analysis_date) VALUES (?, ?, ?)",
                (image_id, result.model_dump_json(), utc_now()),
            )
            return int(cur.lastrowid)

    def get_analysis(self, image_id: int) -> Optional[AnalysisResult]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM analysis WHERE image_id = ? ORDER BY id DESC LIMIT 1", (image_id,)
            ).fetchone()
        return AnalysisResult.model_validate_json(row["data"]) if row else None

    def close(self):
        with self._lock:
            self._conn.close()
