from .lru_cache import LRUCache
from .odp_config import OdpConfig, OdpConfigState
from .odp_manager import OdpManager
from .event_manager import OdpEvent, OdpEventManager, EventAPIManager
from .segment_manager import SegmentManager, SegmentAPIManager
