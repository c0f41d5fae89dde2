"""Bounded, batched event queue shared by impression and ODP event delivery.

Producers add events synchronously. A single background worker flushes the
queue every ``flush_interval`` seconds and once more when it is stopped.
Reaching ``batch_size`` triggers an extra flush on a short-lived thread; a
semaphore of weight one keeps those from piling up. All flushes run under
one flush lock.
"""

import random
import logging
import threading
import time

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, List, Optional

from .errors import EventDispatchError, QueueFullError

logger = logging.getLogger("splitflag.event_queue")

MAX_RETRIES = 3


class BackoffStrategy:
    """Exponential backoff with jitter for failed requests"""
    def __init__(
        self,
        initial_delay: float = 0.2,
        max_delay: float = 5.0,
        multiplier: float = 2.0,
        jitter: float = 0.1
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(
            self.initial_delay * (self.multiplier ** self.attempt),
            self.max_delay
        )
        jitter_amount = delay * self.jitter
        delay = delay + (random.random() * 2 - 1) * jitter_amount
        self.attempt += 1
        return max(delay, self.initial_delay)

    def reset(self) -> None:
        self.attempt = 0


class EventQueue(ABC):
    def __init__(
        self,
        batch_size: int = 10,
        max_queue_size: int = 10000,
        flush_interval: float = 1.0,
        backoff: Optional[BackoffStrategy] = None,
        default_batch_size: int = 10,
        default_queue_size: int = 10000,
    ) -> None:
        if batch_size <= 0:
            batch_size = default_batch_size
        if max_queue_size <= 0:
            max_queue_size = default_queue_size
        if batch_size > max_queue_size:
            logger.warning(
                "Batch size %d is larger than queue size %d. Setting to defaults", batch_size, max_queue_size
            )
            batch_size = default_batch_size
            max_queue_size = default_queue_size

        self.batch_size = batch_size
        self.max_queue_size = max_queue_size
        self.flush_interval = flush_interval if flush_interval > 0 else 1.0
        self.backoff = backoff or BackoffStrategy()

        self._queue: Deque[Any] = deque()
        self._queue_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._processing = threading.BoundedSemaphore(1)
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    # Queue primitives

    def size(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def _add(self, event: Any) -> None:
        with self._queue_lock:
            if len(self._queue) >= self.max_queue_size:
                raise QueueFullError(f"max queue size {self.max_queue_size} reached, discarding event")
            self._queue.append(event)
            size = len(self._queue)

        self.start()
        if size >= self.batch_size:
            self._trigger_flush()

    def _peek(self, count: int) -> List[Any]:
        with self._queue_lock:
            return [self._queue[i] for i in range(min(count, len(self._queue)))]

    def _remove(self, count: int) -> None:
        with self._queue_lock:
            for _ in range(min(count, len(self._queue))):
                self._queue.popleft()

    def purge(self) -> None:
        with self._queue_lock:
            if self._queue:
                logger.debug("Purging %d queued events", len(self._queue))
            self._queue.clear()

    # Worker

    def start(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop_event.clear()
            self._worker = threading.Thread(target=self._run, name=type(self).__name__, daemon=True)
            self._worker.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker after a final flush."""
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        self._stop_event.set()
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
        else:
            self.flush()

    @property
    def is_running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self.flush_interval):
            self._safe_flush()
        logger.debug("%s stopped, flushing events", type(self).__name__)
        self._safe_flush()

    def _safe_flush(self, full_batches_only: bool = False) -> None:
        try:
            self.flush(full_batches_only)
        except Exception as e:
            logger.error(f"Unexpected error while flushing events: {e}")

    def _trigger_flush(self) -> None:
        if not self._processing.acquire(blocking=False):
            return
        logger.debug("Batch size reached, flushing")

        def run():
            try:
                self._safe_flush(full_batches_only=True)
            finally:
                self._processing.release()

        threading.Thread(target=run, daemon=True).start()

    def _select_batch(self, events: List[Any]) -> List[Any]:
        """Leading events that can travel in one request."""
        return events

    @abstractmethod
    def _dispatch(self, batch: List[Any]) -> None:
        """Send one batch; raise EventDispatchError on failure."""
        pass

    def flush(self, full_batches_only: bool = False) -> None:
        """Send queued events in batches of at most ``batch_size``.

        A batch that keeps failing with retryable errors ends the flush and
        stays queued. With ``full_batches_only`` a trailing partial batch is
        left for the timer.
        """
        with self._flush_lock:
            while self.size() > 0:
                if full_batches_only and self.size() < self.batch_size:
                    break
                batch = self._select_batch(self._peek(self.batch_size))
                if not batch:
                    break
                if not self._send_with_retries(batch):
                    logger.error("Last event batch failed to send; retrying on next flush")
                    return

    def _send_with_retries(self, batch: List[Any]) -> bool:
        self.backoff.reset()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                self._dispatch(batch)
            except EventDispatchError as e:
                if not e.retryable:
                    logger.warning(str(e))
                    self._remove(len(batch))
                    return True
                logger.warning("%s (attempt %d of %d)", e, attempt, MAX_RETRIES)
                if attempt < MAX_RETRIES:
                    time.sleep(self.backoff.next_delay())
                continue
            self._remove(len(batch))
            logger.debug("Dispatched %d events", len(batch))
            return True
        return False
