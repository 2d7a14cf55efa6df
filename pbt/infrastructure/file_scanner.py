import logging
import os
from pathlib import Path
from typing import List, Generator, Optional
from pbt.config.models import SUPPORTED_EXTENSIONS

RAW_EXTENSIONS = {".cr2", ".nef", ".arw", ".dng", ".raf", ".orf", ".rw2"}

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".cr2": "image/x-canon-cr2",
    ".nef": "image/x-nikon-nef",
    ".arw": "image/x-sony-arw",
    ".dng": "image/x-adobe-dng",
    ".raf": "image/x-fuji-raf",
    ".orf": "image/x-olympus-orf",
    ".rw2": "image/x-panasonic-rw2",
}

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """The batch root cannot be walked. Fatal for the whole batch."""


def is_raw(path: Path) -> bool:
    return path.suffix.lower() in RAW_EXTENSIONS


def mime_type(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")


class FileScanner:
    """Recursively scans a folder for supported image files."""

    def __init__(self, extensions: Optional[List[str]] = None):
        extensions = extensions if extensions is not None else SUPPORTED_EXTENSIONS
        self.extensions = {(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions}

    def _root_error(self, root_dir: Path, exc: OSError) -> DiscoveryError:
        if isinstance(exc, FileNotFoundError):
            return DiscoveryError(f'Directory not found: "{root_dir}"')
        if isinstance(exc, PermissionError):
            return DiscoveryError(f'Permission denied accessing directory: "{root_dir}"')
        if isinstance(exc, NotADirectoryError):
            return DiscoveryError(f'Not a directory: "{root_dir}"')
        return DiscoveryError(f'Failed to scan directory "{root_dir}": {exc}')

    def scan(self, root_dir: Path) -> Generator[Path, None, None]:
        """Yields supported files depth-first, entries sorted per directory.

        Within a directory its own files come first, then each subdirectory in
        name order (os.walk top-down order).

        Raises DiscoveryError if the root itself cannot be listed. Unreadable
        subdirectories are logged and skipped.
        """
        root_dir = Path(root_dir)

        def on_error(exc: OSError):
            failed = Path(exc.filename) if exc.filename else None
            if failed is None or failed == root_dir:
                raise self._root_error(root_dir, exc) from exc
            logger.warning(f"DISCOVERY: skipping unreadable directory {failed}: {exc}")

        # os.walk swallows a missing root unless onerror raises
        if not root_dir.exists():
            raise self._root_error(root_dir, FileNotFoundError(2, "No such file or directory", str(root_dir)))

        for root, dirs, files in os.walk(str(root_dir), onerror=on_error):
            root_path = Path(root)

            # Ensure deterministic traversal: sort directories and files
            dirs.sort()
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                if file_path.suffix.lower() not in self.extensions:
                    continue
                yield file_path

    def discover(self, root_dir: Path) -> List[Path]:
        files = list(self.scan(root_dir))
        logger.info(f"DISCOVERY: {len(files)} supported files under {root_dir}")
        return files
