import json
import uuid
import logging

from typing import Any, Dict, List, Optional

from urllib3 import PoolManager, Timeout
from urllib3.exceptions import HTTPError

from ..errors import (
    OdpEventFailedError,
    OdpInvalidActionError,
    OdpInvalidDataError,
    OdpNotIntegratedError,
)
from ..event_queue import BackoffStrategy, EventQueue
from ..values import is_primitive
from .odp_config import OdpConfig

logger = logging.getLogger("splitflag.odp.event_manager")

EVENTS_PATH = "/v3/events"
API_KEY_HEADER = "x-api-key"
ODP_EVENT_TYPE = "fullstack"
FS_USER_ID = "fs_user_id"
IDENTIFIED_ACTION = "identified"
DATA_SOURCE_TYPE = "sdk"

DEFAULT_BATCH_SIZE = 10
DEFAULT_QUEUE_SIZE = 10000
DEFAULT_FLUSH_INTERVAL = 1.0
DEFAULT_REQUEST_TIMEOUT = 10.0


def normalize_identifiers(identifiers: Dict[str, str]) -> Dict[str, str]:
    """Rewrite spellings such as ``FS-USER-ID`` to ``fs_user_id``."""
    normalized = {}
    for key, value in identifiers.items():
        if key.lower().replace("-", "_") in (FS_USER_ID, "fsuserid"):
            key = FS_USER_ID
        normalized[key] = value
    return normalized


class OdpEvent(object):
    def __init__(
        self,
        type: str,
        action: str,
        identifiers: Dict[str, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.type = type
        self.action = action
        self.identifiers = normalize_identifiers(identifiers or {})
        self.data = dict(data or {})

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "action": self.action,
            "identifiers": self.identifiers,
            "data": self.data,
        }

    def __repr__(self) -> str:
        return f"OdpEvent({self.to_dict()!r})"


class EventAPIManager(object):
    """Posts batches of ODP events."""

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self.timeout = timeout
        self.http: Optional[PoolManager] = None

    # Perform the POST request (separate method for easy mocking)
    def _post(self, url: str, body: bytes, headers: Dict[str, str]):
        self.http = self.http or PoolManager(timeout=Timeout(total=self.timeout))
        return self.http.request("POST", url, body=body, headers=headers)

    def send_odp_events(self, api_key: str, api_host: str, events: List[OdpEvent]) -> None:
        """Raises OdpEventFailedError; ``retryable`` is False for 4xx responses."""
        url = api_host.rstrip("/") + EVENTS_PATH
        headers = {"Content-Type": "application/json", API_KEY_HEADER: api_key}
        try:
            body = json.dumps([event.to_dict() for event in events]).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise OdpEventFailedError(str(e), retryable=False) from e

        try:
            r = self._post(url, body, headers)
        except HTTPError as e:
            raise OdpEventFailedError("network error", retryable=True) from e

        if 400 <= r.status < 500:
            raise OdpEventFailedError(f"{r.status}", retryable=False)
        if r.status >= 500:
            raise OdpEventFailedError(f"{r.status}", retryable=True)


class OdpEventManager(EventQueue):
    def __init__(
        self,
        odp_config: OdpConfig,
        api_manager: Optional[EventAPIManager] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        backoff: Optional[BackoffStrategy] = None,
        client_name: str = "",
        client_version: str = "",
    ) -> None:
        super().__init__(
            batch_size=batch_size,
            max_queue_size=max_queue_size,
            flush_interval=flush_interval,
            backoff=backoff,
            default_batch_size=DEFAULT_BATCH_SIZE,
            default_queue_size=DEFAULT_QUEUE_SIZE,
        )
        self.odp_config = odp_config
        self.api_manager = api_manager or EventAPIManager()
        self.client_name = client_name
        self.client_version = client_version

    def is_integrated(self) -> bool:
        if not self.odp_config.is_integrated():
            self.purge()
            return False
        return True

    def _add_common_data(self, event: OdpEvent) -> None:
        data = {
            "idempotence_id": str(uuid.uuid4()),
            "data_source_type": DATA_SOURCE_TYPE,
            "data_source": self.client_name,
            "data_source_version": self.client_version,
        }
        data.update(event.data)
        event.data = data

    def process_event(self, event: OdpEvent) -> None:
        """Queue an event for delivery or raise why it was rejected."""
        if not self.is_integrated():
            raise OdpNotIntegratedError()
        if not event.action:
            raise OdpInvalidActionError()
        if not all(is_primitive(value) for value in event.data.values()):
            raise OdpInvalidDataError()

        self._add_common_data(event)
        self._add(event)

    def identify_user(self, user_id: str) -> None:
        if not self.odp_config.is_integrated():
            logger.debug("ODP identify event is not dispatched (ODP not integrated)")
            return
        self.process_event(OdpEvent(ODP_EVENT_TYPE, IDENTIFIED_ACTION, {FS_USER_ID: user_id}))

    def _dispatch(self, batch: List[OdpEvent]) -> None:
        api_key = self.odp_config.get_api_key()
        api_host = self.odp_config.get_api_host()
        if not (api_key and api_host):
            self.purge()
            raise OdpEventFailedError("ODP not integrated", retryable=False)
        self.api_manager.send_odp_events(api_key, api_host, batch)
