"""Thread-safe lookup table for sensors and curves."""

import threading
from typing import Any, Dict, List

from ..errors import ConfigurationError


class Registry:
    """Append-once mapping of id to item

    Items must provide get_id(). Each id can be registered once.
    """

    def __init__(self, kind: str):
        self.kind = kind
        self._items: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, item: Any) -> None:
        item_id = item.get_id()
        with self._lock:
            if item_id in self._items:
                raise ConfigurationError(f"Duplicate {self.kind} id '{item_id}'")
            self._items[item_id] = item

    def get(self, item_id: str) -> Any:
        with self._lock:
            try:
                return self._items[item_id]
            except KeyError:
                raise ConfigurationError(f"No {self.kind} with id '{item_id}'") from None

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def values(self) -> List[Any]:
        with self._lock:
            return list(self._items.values())

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
