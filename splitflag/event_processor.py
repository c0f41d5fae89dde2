import json
import logging

from typing import Any, Dict, List, Optional

from urllib3 import PoolManager, Timeout
from urllib3.exceptions import HTTPError

from .errors import EventDispatchError
from .event_factory import UserEvent, create_log_batch
from .event_queue import BackoffStrategy, EventQueue

logger = logging.getLogger("splitflag.event_processor")

DEFAULT_EVENT_ENDPOINT = "https://logx.optimizely.com/v1/events"
DEFAULT_BATCH_SIZE = 10
DEFAULT_QUEUE_SIZE = 2000
DEFAULT_FLUSH_INTERVAL = 30.0
DEFAULT_REQUEST_TIMEOUT = 10.0


class EventDispatcher(object):
    """POSTs log batches as JSON."""

    def __init__(self, endpoint: Optional[str] = None, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self.endpoint = endpoint or DEFAULT_EVENT_ENDPOINT
        self.timeout = timeout
        self.http: Optional[PoolManager] = None

    # Perform the POST request (separate method for easy mocking)
    def _post(self, url: str, body: bytes, headers: Dict[str, str]):
        self.http = self.http or PoolManager(timeout=Timeout(total=self.timeout))
        return self.http.request("POST", url, body=body, headers=headers)

    def dispatch(self, batch: Dict[str, Any]) -> None:
        body = json.dumps(batch).encode("utf-8")
        try:
            r = self._post(self.endpoint, body, {"Content-Type": "application/json"})
        except HTTPError as e:
            raise EventDispatchError(f"Event dispatch failed: {e}", retryable=True) from e

        if 400 <= r.status < 500:
            raise EventDispatchError(f"Event dispatch failed with status {r.status}", retryable=False)
        if r.status >= 500:
            raise EventDispatchError(f"Event dispatch failed with status {r.status}", retryable=True)


class BatchEventProcessor(EventQueue):
    """Queues impression and conversion events and sends them in batches."""

    def __init__(
        self,
        dispatcher: Optional[EventDispatcher] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        backoff: Optional[BackoffStrategy] = None,
    ) -> None:
        super().__init__(
            batch_size=batch_size,
            max_queue_size=max_queue_size,
            flush_interval=flush_interval,
            backoff=backoff,
            default_batch_size=DEFAULT_BATCH_SIZE,
            default_queue_size=DEFAULT_QUEUE_SIZE,
        )
        self.dispatcher = dispatcher or EventDispatcher()

    def process(self, event: UserEvent) -> None:
        self._add(event)

    def _select_batch(self, events: List[UserEvent]) -> List[UserEvent]:
        # Only events from the same project revision share a request
        if not events:
            return events
        key = events[0].context.batch_key()
        batch = []
        for event in events:
            if event.context.batch_key() != key:
                break
            batch.append(event)
        return batch

    def _dispatch(self, batch: List[UserEvent]) -> None:
        self.dispatcher.dispatch(create_log_batch(batch))
