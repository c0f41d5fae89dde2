import time
from unittest.mock import patch

import pytest

from conftest import wait_for
from splitflag.errors import EventDispatchError, QueueFullError
from splitflag.event_queue import BackoffStrategy, EventQueue


class RecordingQueue(EventQueue):
    def __init__(self, failures=None, **kwargs):
        kwargs.setdefault("backoff", BackoffStrategy(initial_delay=0.001, max_delay=0.001))
        super().__init__(**kwargs)
        self.batches = []
        self.attempts = 0
        self.failures = list(failures or [])

    def _dispatch(self, batch):
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        self.batches.append(list(batch))


def test_flush_batching():
    queue = RecordingQueue(batch_size=3, flush_interval=10)
    try:
        queue._add(1)
        queue._add(2)
        time.sleep(0.1)
        assert queue.batches == []

        queue._add(3)
        assert wait_for(lambda: len(queue.batches) == 1)
        assert queue.batches == [[1, 2, 3]]

        queue._add(4)
        time.sleep(0.1)
        assert queue.batches == [[1, 2, 3]]
        assert queue.size() == 1
    finally:
        queue.stop()

    assert queue.batches == [[1, 2, 3], [4]]
    assert not queue.is_running


def test_timer_flush():
    queue = RecordingQueue(batch_size=10, flush_interval=0.05)
    try:
        queue._add("a")
        assert wait_for(lambda: queue.batches == [["a"]])
    finally:
        queue.stop()


def test_manual_flush_sends_all_batches():
    queue = RecordingQueue(batch_size=2, flush_interval=10)
    with patch.object(queue, "_trigger_flush"):
        for i in range(5):
            queue._add(i)
    queue.flush()
    assert queue.batches == [[0, 1], [2, 3], [4]]
    queue.stop()


def test_full_batches_only_leaves_partial_batch():
    queue = RecordingQueue(batch_size=2, flush_interval=10)
    with patch.object(queue, "_trigger_flush"):
        for i in range(3):
            queue._add(i)
    queue.flush(full_batches_only=True)
    assert queue.batches == [[0, 1]]
    assert queue.size() == 1
    queue.stop()


def test_retryable_errors_are_retried():
    queue = RecordingQueue(
        failures=[EventDispatchError("boom", retryable=True), EventDispatchError("boom", retryable=True)],
        batch_size=5,
        flush_interval=10,
    )
    with patch.object(queue, "_trigger_flush"):
        queue._add("a")
    queue.flush()
    assert queue.attempts == 3
    assert queue.batches == [["a"]]
    assert queue.size() == 0
    queue.stop()


def test_batch_stays_queued_after_max_retries():
    queue = RecordingQueue(
        failures=[EventDispatchError("boom", retryable=True)] * 3,
        batch_size=1,
        flush_interval=10,
    )
    with patch.object(queue, "_trigger_flush"):
        queue._add("a")
        queue._add("b")
    queue.flush()
    assert queue.attempts == 3
    assert queue.batches == []
    assert queue.size() == 2

    queue.flush()
    assert queue.batches == [["a"], ["b"]]
    queue.stop()


def test_permanent_errors_drop_the_batch():
    queue = RecordingQueue(failures=[EventDispatchError("bad request")], batch_size=2, flush_interval=10)
    with patch.object(queue, "_trigger_flush"):
        for i in range(4):
            queue._add(i)
    queue.flush()
    assert queue.attempts == 2
    assert queue.batches == [[2, 3]]
    assert queue.size() == 0
    queue.stop()


def test_queue_full():
    queue = RecordingQueue(batch_size=2, max_queue_size=2, flush_interval=10)
    with patch.object(queue, "_trigger_flush"):
        queue._add(1)
        queue._add(2)
        with pytest.raises(QueueFullError):
            queue._add(3)
    assert queue.size() == 2
    queue.purge()
    assert queue.size() == 0
    queue.stop()


def test_invalid_sizes_fall_back_to_defaults():
    queue = RecordingQueue(batch_size=0, max_queue_size=-1, default_batch_size=7, default_queue_size=70)
    assert queue.batch_size == 7
    assert queue.max_queue_size == 70

    queue = RecordingQueue(batch_size=50, max_queue_size=10, default_batch_size=7, default_queue_size=70)
    assert (queue.batch_size, queue.max_queue_size) == (7, 70)


def test_stop_without_worker_flushes():
    queue = RecordingQueue(batch_size=5, flush_interval=10)
    with patch.object(queue, "start"):
        queue._add("a")
    queue.stop()
    assert queue.batches == [["a"]]


def test_backoff_strategy():
    backoff = BackoffStrategy(initial_delay=1.0, max_delay=4.0, multiplier=2.0, jitter=0)
    assert [backoff.next_delay() for _ in range(4)] == [1.0, 2.0, 4.0, 4.0]
    backoff.reset()
    assert backoff.next_delay() == 1.0


def test_queue_requires_a_dispatcher():
    with pytest.raises(TypeError):
        EventQueue()
