from __future__ import annotations

from collections import OrderedDict
from collections.abc import ItemsView, Iterator
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class BoundedLruMap(Generic[K, V]):
    """Insertion/touch ordered map that evicts the least recently used key."""

    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(self._data)

    def get(self, key: K, default: V | None = None, *, touch: bool = False) -> V | None:
        if key not in self._data:
            return default
        value = self._data[key]
        if touch:
            self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> K | None:
        """Store ``value`` and return the evicted key, if any."""
        is_new = key not in self._data
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            evicted, _ = self._data.popitem(last=False)
            return evicted
        return None

    def pop(self, key: K, default: V | None = None) -> V | None:
        return self._data.pop(key, default)

    def items(self) -> ItemsView[K, V]:
        return self._data.items()

    def to_dict(self) -> dict[K, V]:
        return dict(self._data)
