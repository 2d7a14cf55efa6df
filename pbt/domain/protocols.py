"""Collaborator protocols consumed by the pipeline."""

from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple, Union
from pbt.domain.models import AnalysisResult, ImageRecord, ImageStatus

ImageSource = Union[Path, bytes]


class RecordStore(Protocol):
    """Persistence for image, metadata and analysis records."""

    def insert_image(self, record: ImageRecord) -> int: ...

    def get_image(self, image_id: int) -> Optional[ImageRecord]: ...

    def update_image_status(
        self, image_id: int, status: ImageStatus, error_message: Optional[str] = None
    ) -> None: ...

    def find_duplicate(self, original_name: str, file_size: int) -> Optional[ImageRecord]: ...

    def insert_metadata(self, image_id: int, metadata: Dict[str, Any]) -> None: ...

    def insert_analysis(self, image_id: int, result: AnalysisResult) -> int: ...

    def get_analysis(self, image_id: int) -> Optional[AnalysisResult]: ...


class ImageCodec(Protocol):
    """Pixel operations. `source` is a file path or encoded image bytes."""

    def resize(self, source: ImageSource, max_dim: int, quality: int) -> bytes: ...

    def extract_embedded_preview(self, raw_path: Path) -> bytes: ...

    def dimensions(self, source: ImageSource) -> Tuple[int, int]: ...


class MetadataExtractor(Protocol):
    """Returns a bounded tag map, or None when the file carries nothing usable."""

    def parse(self, image_path: Path) -> Optional[Dict[str, Any]]: ...


class AnalysisProvider(Protocol):
    """Content analysis. Raises on failure; timeouts are enforced here."""

    def analyze(
        self,
        image_path: Path,
        prompt: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisResult: ...
