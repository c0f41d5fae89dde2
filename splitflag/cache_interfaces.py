from abc import abstractmethod, ABC
from typing import Any, Optional


class AbstractSegmentsCache(ABC):
    """Cache of qualified-segment lists keyed by user identifier.

    Implementations must be safe to call from several threads.
    """

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def lookup(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def reset(self) -> None:
        pass
