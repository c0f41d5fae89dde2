import threading

from enum import Enum
from typing import List, Optional


class OdpConfigState(Enum):
    UNDETERMINED = 1
    INTEGRATED = 2
    NOT_INTEGRATED = 3


class OdpConfig(object):
    """Shared view of the ODP integration taken from the current datafile.

    The state stays ``UNDETERMINED`` until the first datafile is applied.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_host: Optional[str] = None,
        segments_to_check: Optional[List[str]] = None,
    ) -> None:
        self._api_key = api_key
        self._api_host = api_host
        self._segments_to_check = list(segments_to_check or [])
        self._lock = threading.Lock()
        self._state = OdpConfigState.UNDETERMINED
        if api_key is not None or api_host is not None:
            self._state = OdpConfigState.INTEGRATED if api_key and api_host else OdpConfigState.NOT_INTEGRATED

    def update(self, api_key: Optional[str], api_host: Optional[str], segments_to_check: List[str]) -> bool:
        """Replace the settings; returns True when anything changed."""
        state = OdpConfigState.INTEGRATED if api_key and api_host else OdpConfigState.NOT_INTEGRATED
        with self._lock:
            changed = (
                self._state != state
                or self._api_key != api_key
                or self._api_host != api_host
                or self._segments_to_check != list(segments_to_check or [])
            )
            self._state = state
            self._api_key = api_key
            self._api_host = api_host
            self._segments_to_check = list(segments_to_check or [])
            return changed

    def get_api_key(self) -> Optional[str]:
        with self._lock:
            return self._api_key

    def get_api_host(self) -> Optional[str]:
        with self._lock:
            return self._api_host

    def get_segments_to_check(self) -> List[str]:
        with self._lock:
            return list(self._segments_to_check)

    def get_state(self) -> OdpConfigState:
        with self._lock:
            return self._state

    def is_integrated(self) -> bool:
        with self._lock:
            return self._state == OdpConfigState.INTEGRATED
