import pytest
import time
from typing import Iterable, List, Optional
from pathlib import Path

from pbt.config.models import AppConfig, BatchOptions
from pbt.infrastructure.event_bus import EventBus
from pbt.infrastructure.record_store import SqliteRecordStore

# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    record_store = SqliteRecordStore(":memory:")
    yield record_store
    record_store.close()


@pytest.fixture
def fast_options():
    """Batch options with no retry delay and no group spacing."""
    return BatchOptions(retry_delay=0, enable_rate_limit=False)


@pytest.fixture
def app_config(tmp_path):
    """AppConfig writing every artifact under tmp_path/out."""
    out = tmp_path / "out"
    return AppConfig(
        general={"log_path": str(tmp_path / "logs" / "pbt.log"), "max_active_batches": 2},
        storage={
            "upload_dir": str(out / "uploads"),
            "preview_dir": str(out / "uploads" / "processed"),
            "thumbnail_dir": str(out / "thumbnails"),
            "database_path": ":memory:",
        },
        batch={"retry_delay": 0, "enable_rate_limit": False},
    )


@pytest.fixture
def make_photos(tmp_path):
    """Creates photo files (fake bytes) under tmp_path/photos and returns their paths."""
    root = tmp_path / "photos"

    def _make(names: Iterable[str], subdir: Optional[str] = None) -> List[Path]:
        target = root / subdir if subdir else root
        target.mkdir(parents=True, exist_ok=True)
        paths = []
        for i, name in enumerate(names):
            path = target / name
            path.write_bytes(b"\xff\xd8" + name.encode() + b"\x00" * (100 + i))
            paths.append(path)
        return paths

    _make.root = root
    return _make


@pytest.fixture
def wait_for():
    """Polls a predicate until it holds or the timeout expires."""

    def _wait(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
