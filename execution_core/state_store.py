"""
State Stores
============

Process-scoped keyed stores for the shared execution maps
(active transactions, Q-table, venue performance, protections).

Components only touch their maps through get/put/delete, so the
backing store can be swapped for a locked or concurrent map without
changing call sites. Mutation happens on the event loop thread only.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar('K')
V = TypeVar('V')


class StateStore(Generic[K, V]):
    """
    Keyed store with an optional item bound.

    When max_items is set the least recently written entry is evicted
    first and on_evict is called with it.
    """

    def __init__(
        self,
        name: str,
        max_items: int | None = None,
        on_evict: Callable[[K, V], None] | None = None,
    ):
        self.name = name
        self.max_items = max_items
        self._on_evict = on_evict
        self._items: OrderedDict[K, V] = OrderedDict()
        self._evictions = 0

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._items.get(key, default)

    def put(self, key: K, value: V) -> None:
        if key in self._items:
            self._items.move_to_end(key)
        self._items[key] = value
        if self.max_items is not None:
            while len(self._items) > self.max_items:
                old_key, old_value = self._items.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Store {self.name} evicted {old_key}")
                if self._on_evict is not None:
                    self._on_evict(old_key, old_value)

    def delete(self, key: K) -> bool:
        """Remove a key. Returns False if it was not present."""
        if key not in self._items:
            return False
        del self._items[key]
        return True

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> list[K]:
        return list(self._items.keys())

    def values(self) -> list[V]:
        return list(self._items.values())

    def items(self) -> list[tuple[K, V]]:
        return list(self._items.items())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._items.keys()))

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "size": len(self._items),
            "max_items": self.max_items,
            "evictions": self._evictions,
        }
