import logging

from typing import Any, Dict, Iterable, List, Optional

from ..errors import OdpInvalidDataError, OdpNotEnabledError
from .event_manager import ODP_EVENT_TYPE, OdpEvent, OdpEventManager
from .lru_cache import LRUCache
from .odp_config import OdpConfig, OdpConfigState
from .segment_manager import (
    DEFAULT_SEGMENTS_CACHE_SIZE,
    DEFAULT_SEGMENTS_CACHE_TIMEOUT,
    SegmentManager,
)

logger = logging.getLogger("splitflag.odp.odp_manager")


class OdpManager(object):
    """Owns the ODP config overlay and the segment and event managers built on it."""

    def __init__(
        self,
        disabled: bool = False,
        segment_manager: Optional[SegmentManager] = None,
        event_manager: Optional[OdpEventManager] = None,
        segments_cache_size: int = DEFAULT_SEGMENTS_CACHE_SIZE,
        segments_cache_timeout: float = DEFAULT_SEGMENTS_CACHE_TIMEOUT,
        odp_config: Optional[OdpConfig] = None,
    ) -> None:
        self.enabled = not disabled
        self.odp_config = odp_config or OdpConfig()
        self.segment_manager = segment_manager
        self.event_manager = event_manager

        if not self.enabled:
            logger.info("ODP is disabled")
            return

        if self.segment_manager is None:
            cache = LRUCache(segments_cache_size, segments_cache_timeout)
            self.segment_manager = SegmentManager(self.odp_config, cache)
        else:
            self.segment_manager.odp_config = self.odp_config

        if self.event_manager is None:
            self.event_manager = OdpEventManager(self.odp_config)
        else:
            self.event_manager.odp_config = self.odp_config

    def fetch_qualified_segments(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        if not self.enabled or self.segment_manager is None:
            raise OdpNotEnabledError()
        return self.segment_manager.fetch_qualified_segments(user_id, options)

    async def fetch_qualified_segments_async(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        if not self.enabled or self.segment_manager is None:
            raise OdpNotEnabledError()
        return await self.segment_manager.fetch_qualified_segments_async(user_id, options)

    def identify_user(self, user_id: str) -> None:
        if not self.enabled or self.event_manager is None:
            logger.debug("ODP identify event is not dispatched (ODP disabled)")
            return
        if self.odp_config.get_state() == OdpConfigState.NOT_INTEGRATED:
            logger.debug("ODP identify event is not dispatched (ODP not integrated)")
            return
        self.event_manager.identify_user(user_id)

    def send_event(
        self,
        event_type: str,
        action: str,
        identifiers: Dict[str, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.enabled or self.event_manager is None:
            raise OdpNotEnabledError()
        if data is not None and not isinstance(data, dict):
            raise OdpInvalidDataError()
        self.event_manager.process_event(OdpEvent(event_type or ODP_EVENT_TYPE, action, identifiers, data))

    def update(self, api_key: Optional[str], api_host: Optional[str], segments_to_check: List[str]) -> None:
        """Apply ODP settings from a new datafile.

        Queued events are flushed with the previous settings first; the
        segment cache is reset when anything changed and the queue is purged
        when ODP is no longer integrated.
        """
        if not self.enabled:
            return

        if self.event_manager is not None and self.event_manager.size() > 0:
            self.event_manager.flush()

        if self.odp_config.update(api_key, api_host, segments_to_check):
            logger.debug("ODP config changed")
            if self.segment_manager is not None:
                self.segment_manager.reset()

        if self.event_manager is not None and not api_host:
            self.event_manager.purge()

    def close(self) -> None:
        if self.event_manager is not None:
            self.event_manager.stop()

