import copy
import logging
import threading

from typing import Any, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from .common_types import Decision, UserContext
from .errors import SplitFlagError

if TYPE_CHECKING:
    from .splitflag import SplitFlag

logger = logging.getLogger("splitflag.user_context")


class SplitFlagUserContext(object):
    """A user as seen by the client: id, attributes, qualified segments and
    forced decisions. Decisions are delegated back to the client."""

    def __init__(
        self,
        client: "SplitFlag",
        user_id: str,
        attributes: Optional[Dict[str, Any]] = None,
        identify: bool = True,
    ) -> None:
        self.client = client
        self.user_id = user_id
        self._attributes: Dict[str, Any] = dict(attributes or {})
        self._qualified_segments: Optional[List[str]] = None
        self._forced_decisions: Dict[Tuple[str, Optional[str]], str] = {}
        self._lock = threading.Lock()

        if identify and client is not None:
            client.identify_user(user_id)

    # Attributes and segments

    def get_user_attributes(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._attributes)

    def set_attribute(self, key: str, value: Any) -> None:
        with self._lock:
            self._attributes[key] = value

    def get_qualified_segments(self) -> Optional[List[str]]:
        with self._lock:
            if self._qualified_segments is None:
                return None
            return list(self._qualified_segments)

    def set_qualified_segments(self, segments: Optional[Iterable[str]]) -> None:
        with self._lock:
            self._qualified_segments = None if segments is None else list(segments)

    def is_qualified_for(self, segment: str) -> bool:
        with self._lock:
            return segment in (self._qualified_segments or [])

    def to_user(self) -> UserContext:
        """Immutable snapshot used for one decision."""
        with self._lock:
            return UserContext(
                id=self.user_id,
                attributes=copy.deepcopy(self._attributes),
                qualified_segments=None if self._qualified_segments is None else list(self._qualified_segments),
            )

    def fetch_qualified_segments(self, options: Optional[Iterable] = None) -> bool:
        """Fetch and store the user's segments. Returns False on failure."""
        try:
            segments = self.client.fetch_qualified_segments(self.user_id, options)
        except SplitFlagError as e:
            logger.warning(f"Failed to fetch qualified segments for {self.user_id}: {e}")
            return False
        self.set_qualified_segments(segments)
        return True

    async def fetch_qualified_segments_async(self, options: Optional[Iterable] = None) -> bool:
        try:
            segments = await self.client.fetch_qualified_segments_async(self.user_id, options)
        except SplitFlagError as e:
            logger.warning(f"Failed to fetch qualified segments for {self.user_id}: {e}")
            return False
        self.set_qualified_segments(segments)
        return True

    # Forced decisions

    def set_forced_decision(self, flag_key: str, rule_key: Optional[str], variation_key: str) -> bool:
        with self._lock:
            self._forced_decisions[(flag_key, rule_key)] = variation_key
        return True

    def get_forced_decision(self, flag_key: str, rule_key: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._forced_decisions.get((flag_key, rule_key))

    def remove_forced_decision(self, flag_key: str, rule_key: Optional[str] = None) -> bool:
        with self._lock:
            return self._forced_decisions.pop((flag_key, rule_key), None) is not None

    def remove_all_forced_decisions(self) -> bool:
        with self._lock:
            self._forced_decisions.clear()
        return True

    def get_forced_decisions(self) -> Dict[Tuple[str, Optional[str]], str]:
        with self._lock:
            return dict(self._forced_decisions)

    # Delegation

    def decide(self, key: str, options: Optional[Iterable] = None) -> Decision:
        return self.client.decide(self, key, options)

    def decide_for_keys(self, keys: List[str], options: Optional[Iterable] = None) -> Dict[str, Decision]:
        return self.client.decide_for_keys(self, keys, options)

    def decide_all(self, options: Optional[Iterable] = None) -> Dict[str, Decision]:
        return self.client.decide_all(self, options)

    def track_event(self, event_key: str, event_tags: Optional[Dict[str, Any]] = None) -> None:
        self.client.track(event_key, self.user_id, self.get_user_attributes(), event_tags)

    def __repr__(self) -> str:
        return f"SplitFlagUserContext(user_id={self.user_id!r}, attributes={self._attributes!r})"
