"""Analysis queue: FIFO of AnalysisTasks drained in bounded concurrency groups.

Task lifecycle (each step is published on the batch EventBus):

    Pending -> InFlight -> Completed
                        -> Retrying(n) -> Pending      (n <= max_retries, tail of queue)
                        -> Failed                      (retry_count == max_retries)

A group of up to `max_concurrent_analysis` tasks is popped, run on a thread
pool, and fully settled before the next group is pulled. Retry delays are
served inside the group, so a re-enqueued task is back in the queue before the
next group is taken. With rate limiting on, successive groups are spaced by at
least `rate_limit_interval` ms.
"""

import concurrent.futures
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set

from pbt.config.models import BatchOptions
from pbt.domain.events import (
    AnalysisQueued, AnalysisStarted, AnalysisCompleted,
    AnalysisRetrying, AnalysisRequeued, AnalysisFailed,
)
from pbt.domain.models import AnalysisTask, ImageStatus
from pbt.domain.protocols import AnalysisProvider, RecordStore
from pbt.infrastructure.event_bus import EventBus

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Delay before retry number `attempt` (1-based), in seconds.

    fixed:        retry_delay
    exponential:  min(retry_delay * 2**(attempt-1), retry_delay_cap)
    """

    def __init__(self, retry_delay_ms: int, backoff: str = "fixed", cap_ms: Optional[int] = None):
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff policy: {backoff}")
        self.retry_delay_ms = retry_delay_ms
        self.backoff = backoff
        self.cap_ms = cap_ms

    @classmethod
    def from_options(cls, options: BatchOptions) -> "RetryPolicy":
        return cls(options.retry_delay, options.retry_backoff, options.retry_delay_cap)

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        if self.backoff == "fixed":
            return self.retry_delay_ms / 1000
        delay_ms = self.retry_delay_ms * (2 ** (attempt - 1))
        if self.cap_ms is not None:
            delay_ms = min(delay_ms, self.cap_ms)
        return delay_ms / 1000


class RateLimiter:
    """Minimum spacing between successive calls to `wait()`."""

    def __init__(
        self,
        interval_ms: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval_s = interval_ms / 1000
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    def wait(self):
        now = self._clock()
        if self._last is not None:
            remaining = self.interval_s - (now - self._last)
            if remaining > 0:
                self._sleep(remaining)
        self._last = self._clock()

    def reset(self):
        self._last = None


class AnalysisQueue:
    """Per-batch analysis queue with its own worker bound and retry policy."""

    def __init__(
        self,
        batch_id: str,
        bus: EventBus,
        store: RecordStore,
        provider: AnalysisProvider,
        options: BatchOptions,
        pause_token: threading.Event,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.batch_id = batch_id
        self.bus = bus
        self.store = store
        self.provider = provider
        self.options = options
        self.pause_token = pause_token
        self.retry_policy = RetryPolicy.from_options(options)
        self.rate_limiter = RateLimiter(options.rate_limit_interval, sleep=sleep)
        self._sleep = sleep
        self._tasks: Deque[AnalysisTask] = deque()
        self.active: Set[int] = set()
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._tasks)

    def is_idle(self) -> bool:
        """True when nothing is queued and nothing is in flight."""
        with self._cond:
            return not self._tasks and not self.active

    def enqueue(self, task: AnalysisTask, requeue: bool = False):
        with self._cond:
            self._tasks.append(task)
            # Published under the queue lock so a pop can never be counted first
            if requeue:
                self.bus.publish(AnalysisRequeued(batch_id=self.batch_id, task=task))
            else:
                self.bus.publish(AnalysisQueued(batch_id=self.batch_id, task=task))
            self._cond.notify_all()
        logger.debug(
            f"ANALYSIS_QUEUED: image {task.image_id} retry={task.retry_count} (queue length: {len(self)})"
        )

    def clear(self):
        with self._cond:
            self._tasks.clear()
            self.active.clear()
            self._cond.notify_all()
        self.rate_limiter.reset()

    def _next_group(self, producer_done: threading.Event) -> Optional[List[AnalysisTask]]:
        """Pop up to max_concurrent_analysis tasks.

        Returns None when the producer has finished and the queue is empty, and
        an empty list when pause was observed while waiting.
        """
        with self._cond:
            while not self._tasks:
                if producer_done.is_set():
                    return None
                if self.pause_token.is_set():
                    return []
                self._cond.wait(timeout=0.1)

            group: List[AnalysisTask] = []
            while self._tasks and len(group) < self.options.max_concurrent_analysis:
                task = self._tasks.popleft()
                self.active.add(task.image_id)
                self.bus.publish(AnalysisStarted(batch_id=self.batch_id, task=task))
                group.append(task)
            return group

    def drain(self, producer_done: threading.Event):
        """Run groups until the producer is done and the queue is empty, or pause is seen."""
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.options.max_concurrent_analysis,
            thread_name_prefix=f"analysis-{self.batch_id[:8]}",
        ) as executor:
            while not self.pause_token.is_set():
                group = self._next_group(producer_done)
                if group is None:
                    break
                if not group:
                    continue

                logger.debug(f"ANALYSIS_GROUP: batch {self.batch_id} size={len(group)} queued={len(self)}")
                futures = [executor.submit(self._run_task, task) for task in group]
                concurrent.futures.wait(futures)
                for future in futures:
                    exc = future.exception()
                    if exc is not None:
                        logger.error(f"Analysis worker crashed: {exc}")

                if self.options.enable_rate_limit:
                    self.rate_limiter.wait()

    def _run_task(self, task: AnalysisTask):
        try:
            self.store.update_image_status(task.image_id, ImageStatus.PROCESSING)
            result = self.provider.analyze(task.image_path, self.options.custom_prompt, task.metadata)
            self.store.insert_analysis(task.image_id, result)
            self.store.update_image_status(task.image_id, ImageStatus.COMPLETED)
        except Exception as exc:
            self._handle_failure(task, exc)
        else:
            self.bus.publish(AnalysisCompleted(batch_id=self.batch_id, task=task))
            logger.info(f"ANALYSIS_OK: image {task.image_id} (attempt {task.retry_count + 1})")
        finally:
            with self._cond:
                self.active.discard(task.image_id)
                self._cond.notify_all()

    def _handle_failure(self, task: AnalysisTask, exc: Exception):
        message = str(exc) or type(exc).__name__
        logger.error(f"ANALYSIS_FAIL: image {task.image_id} (attempt {task.retry_count + 1}): {message}")

        if task.retry_count < self.options.max_retries:
            self._mark_image_error(task.image_id, f"AI analysis failed: {message}")
            retried = task.model_copy(update={"retry_count": task.retry_count + 1})
            delay = self.retry_policy.delay(retried.retry_count)
            self.bus.publish(AnalysisRetrying(
                batch_id=self.batch_id, task=retried, error_message=message, delay_s=delay,
            ))
            logger.info(
                f"ANALYSIS_RETRY: image {task.image_id} attempt {retried.retry_count + 1} in {delay:.2f}s"
            )
            self._sleep(delay)
            self.enqueue(retried, requeue=True)
            if self.pause_token.is_set():
                logger.info(f"ANALYSIS_RETRY: image {task.image_id} parked in queue, pause requested")
            return

        self._mark_image_error(
            task.image_id, f"AI analysis failed after {task.retry_count} retries: {message}"
        )
        self.bus.publish(AnalysisFailed(batch_id=self.batch_id, task=task, error_message=message))
        logger.error(f"ANALYSIS_FAILED: image {task.image_id} retries exhausted ({task.retry_count})")

    def _mark_image_error(self, image_id: int, message: str):
        try:
            self.store.update_image_status(image_id, ImageStatus.ERROR, message)
        except Exception as exc:
            logger.error(f"Failed to mark image {image_id} as error: {exc}")
