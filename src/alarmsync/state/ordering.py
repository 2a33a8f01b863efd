"""Priority-ordered index of alarm identifiers.

The index keeps two parallel lists, sort keys and identifiers, so positions
can be found with :mod:`bisect` in logarithmic time. Insertion into a Python
list still shifts the tail; that cost is bounded by the size of one category's
active alarm set.
"""

from __future__ import annotations

import bisect
from collections.abc import Iterator

from alarmsync.models.alarm import Alarm
from alarmsync.state.policy import SortKey, sort_key


class OrderingEngine:
    """Maintains identifiers sorted by :func:`~alarmsync.state.policy.sort_key`."""

    def __init__(self) -> None:
        self._keys: list[SortKey] = []
        self._ids: list[str] = []
        self._key_by_id: dict[str, SortKey] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, alarm_id: object) -> bool:
        return alarm_id in self._key_by_id

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def insert(self, alarm: Alarm) -> int:
        """Insert *alarm* at its comparator position and return the index."""
        if alarm.id in self._key_by_id:
            raise ValueError(f"alarm {alarm.id!r} is already indexed")
        key = sort_key(alarm)
        index = bisect.bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._ids.insert(index, alarm.id)
        self._key_by_id[alarm.id] = key
        return index

    def remove(self, alarm_id: str) -> int:
        """Remove *alarm_id* and return the index it occupied."""
        key = self._key_by_id.pop(alarm_id)
        index = bisect.bisect_left(self._keys, key)
        # Keys are unique (the id is part of the key).
        del self._keys[index]
        del self._ids[index]
        return index

    def reposition(self, alarm: Alarm) -> bool:
        """Move *alarm* if its key changed. Returns whether it moved."""
        if self._key_by_id.get(alarm.id) == sort_key(alarm):
            return False
        self.remove(alarm.id)
        self.insert(alarm)
        return True

    def position(self, alarm_id: str) -> int:
        key = self._key_by_id[alarm_id]
        return bisect.bisect_left(self._keys, key)

    def clear(self) -> None:
        self._keys.clear()
        self._ids.clear()
        self._key_by_id.clear()
