import exiftool
import json
import logging
import threading
from pathlib import Path
from typing import Optional, List, Dict, Any

# Friendly key -> ExifTool tag aliases, first hit wins
METADATA_FIELDS: Dict[str, List[str]] = {
    "make": ["EXIF:Make", "Make"],
    "model": ["EXIF:Model", "Model", "XMP:CameraModelName"],
    "lens": ["EXIF:LensModel", "Composite:LensID", "LensModel", "XMP:Lens"],
    "iso": ["EXIF:ISO", "ISO"],
    "fNumber": ["EXIF:FNumber", "Composite:Aperture", "FNumber"],
    "exposureTime": ["EXIF:ExposureTime", "Composite:ShutterSpeed", "ExposureTime"],
    "focalLength": ["EXIF:FocalLength", "FocalLength"],
    "dateTimeOriginal": ["EXIF:DateTimeOriginal", "XMP:DateTimeOriginal", "DateTimeOriginal"],
    "latitude": ["Composite:GPSLatitude", "EXIF:GPSLatitude", "GPSLatitude"],
    "longitude": ["Composite:GPSLongitude", "EXIF:GPSLongitude", "GPSLongitude"],
    "city": ["XMP:City", "IPTC:City"],
    "state": ["XMP:State", "IPTC:Province-State"],
    "country": ["XMP:Country", "IPTC:Country-PrimaryLocationName"],
    "creator": ["XMP:Creator", "IPTC:By-line", "EXIF:Artist"],
    "copyright": ["XMP:Rights", "IPTC:CopyrightNotice", "EXIF:Copyright"],
    "title": ["XMP:Title", "IPTC:ObjectName"],
    "keywords": ["XMP:Subject", "IPTC:Keywords"],
    "orientation": ["EXIF:Orientation"],
}

MAX_VALUE_CHARS = 512
MAX_SNAPSHOT_BYTES = 8192

logger = logging.getLogger(__name__)


class ExifToolAdapter:
    """Wrapper around pyexiftool producing a bounded metadata snapshot per image."""

    def __init__(
        self,
        max_value_chars: int = MAX_VALUE_CHARS,
        max_snapshot_bytes: int = MAX_SNAPSHOT_BYTES,
    ):
        self.et = exiftool.ExifTool()
        self._lock = threading.Lock()
        self.max_value_chars = max_value_chars
        self.max_snapshot_bytes = max_snapshot_bytes

    def _get_tag(self, data: Dict[str, Any], tags: List[str]) -> Optional[Any]:
        """Tries to find the first available tag from a list of aliases."""
        for tag in tags:
            if tag in data and data[tag] not in (None, ""):
                return data[tag]
        return None

    def _clip(self, value: Any) -> Any:
        if isinstance(value, (int, float, bool)):
            return value
        if isinstance(value, list):
            return [self._clip(v) for v in value[:50]]
        text = str(value).strip()
        return text[: self.max_value_chars]

    def sanitize(self, tags: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Keeps allow-listed fields and drops the largest ones until the snapshot fits."""
        snapshot: Dict[str, Any] = {}
        for key, aliases in METADATA_FIELDS.items():
            value = self._get_tag(tags, aliases)
            if value is not None:
                snapshot[key] = self._clip(value)

        def size(d: Dict[str, Any]) -> int:
            return len(json.dumps(d, default=str).encode("utf-8"))

        while snapshot and size(snapshot) > self.max_snapshot_bytes:
            largest = max(snapshot, key=lambda k: len(json.dumps(snapshot[k], default=str)))
            logger.debug(f"METADATA_TRIM: dropping {largest}")
            del snapshot[largest]

        return snapshot or None

    def extract_tags(self, image_path: Path) -> Dict[str, Any]:
        """Extract raw ExifTool tags as a dictionary."""
        with self._lock:
            if not self.et.running:
                self.et.run()
            metadata_list = self.et.execute_json("-n", str(image_path))
        if not metadata_list:
            raise ValueError(f"Could not extract metadata for {image_path}")
        return metadata_list[0]

    def parse(self, image_path: Path) -> Optional[Dict[str, Any]]:
        return self.sanitize(self.extract_tags(image_path))

    def close(self):
        if self.et.running:
            self.et.terminate()
