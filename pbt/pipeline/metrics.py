import threading
import time
from typing import Callable, Optional

import psutil

from pbt.domain.models import MemoryUsage


def format_eta(minutes: float) -> str:
    if minutes < 60:
        return f"{round(minutes)}m"
    hours = int(minutes // 60)
    return f"{hours}h {round(minutes % 60)}m"


def format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def memory_snapshot() -> MemoryUsage:
    process = psutil.Process()
    rss = process.memory_info().rss
    total = psutil.virtual_memory().total
    return MemoryUsage(
        used=round(rss / 1024 / 1024),
        total=round(total / 1024 / 1024),
        percentage=round(process.memory_percent()),
    )


class MetricsTracker:
    """Throughput, ETA and memory for one batch. Advisory only.

    Elapsed time excludes paused intervals so a resumed batch does not report
    a collapsed rate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._active_since: Optional[float] = clock()
        self._accumulated = 0.0
        self.processed_count = 0
        self.processed_bytes = 0

    def elapsed_seconds(self) -> float:
        with self._lock:
            return self._elapsed_locked()

    def _elapsed_locked(self) -> float:
        running = self._clock() - self._active_since if self._active_since is not None else 0.0
        return self._accumulated + running

    def pause(self):
        with self._lock:
            if self._active_since is not None:
                self._accumulated += self._clock() - self._active_since
                self._active_since = None

    def resume(self):
        with self._lock:
            if self._active_since is None:
                self._active_since = self._clock()

    def record(self, size_bytes: int = 0):
        with self._lock:
            self.processed_count += 1
            self.processed_bytes += size_bytes

    def rate_per_minute(self) -> float:
        with self._lock:
            minutes = self._elapsed_locked() / 60
            if minutes <= 0:
                return 0.0
            return round(self.processed_count / minutes, 1)

    def eta(self, remaining_files: int) -> Optional[str]:
        rate = self.rate_per_minute()
        if rate <= 0 or remaining_files < 0:
            return None
        return format_eta(remaining_files / rate)
