"""
Station queues: which panels are at, or waiting for, each station.

A panel appears in at most one station queue at a time. Inserts are
idempotent and removing an absent panel is a no-op, so transition side
effects can be replayed safely.

Usage:
    queues = StationQueueManager()
    queues.enqueue("STATION_1", "P1")
    queues.move("P1", "STATION_1", "STATION_2")
    queues.next_in_queue("STATION_2")   # "P1"
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class StationQueue:
    """
    Ordered, duplicate-free panel queue for one station.

    Backed by an insertion-ordered dict so insert, remove and head read
    are all O(1).
    """

    def __init__(self, station_id: str):
        self.station_id = station_id
        self._lock = threading.Lock()
        self._items: dict[str, None] = {}

    def add(self, panel_id: str) -> bool:
        """Append a panel. Returns False if it was already queued."""
        with self._lock:
            if panel_id in self._items:
                return False
            self._items[panel_id] = None
            return True

    def remove(self, panel_id: str) -> bool:
        """Remove a panel. Returns False if it was not queued."""
        with self._lock:
            if panel_id not in self._items:
                return False
            del self._items[panel_id]
            return True

    def peek(self) -> Optional[str]:
        with self._lock:
            return next(iter(self._items), None)

    def to_list(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, panel_id: object) -> bool:
        with self._lock:
            return panel_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __repr__(self) -> str:
        return f"StationQueue({self.station_id!r}, size={len(self)})"


class StationQueueManager:
    """Creates station queues on first use and routes panels between them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, StationQueue] = {}

    def _queue(self, station_id: str) -> StationQueue:
        with self._lock:
            queue = self._queues.get(station_id)
            if queue is None:
                queue = StationQueue(station_id)
                self._queues[station_id] = queue
            return queue

    def enqueue(self, station_id: str, panel_id: str) -> bool:
        added = self._queue(station_id).add(panel_id)
        if added:
            logger.debug(f"Panel {panel_id} queued at {station_id}")
        return added

    def remove(self, station_id: Optional[str], panel_id: str) -> bool:
        """Remove a panel from a station queue. Absent panel or station is a no-op."""
        if station_id is None:
            return False
        with self._lock:
            queue = self._queues.get(station_id)
        if queue is None:
            return False
        return queue.remove(panel_id)

    def move(
        self,
        panel_id: str,
        from_station: Optional[str],
        to_station: str,
    ) -> None:
        """Take a panel off one station's queue and put it on another's."""
        if from_station != to_station:
            self.remove(from_station, panel_id)
        self.enqueue(to_station, panel_id)

    def get_queue(self, station_id: str) -> list[str]:
        """Snapshot of a station's queue, empty if the station has none."""
        with self._lock:
            queue = self._queues.get(station_id)
        return queue.to_list() if queue is not None else []

    def next_in_queue(self, station_id: str) -> Optional[str]:
        with self._lock:
            queue = self._queues.get(station_id)
        return queue.peek() if queue is not None else None

    def counts(self) -> dict[str, int]:
        with self._lock:
            queues = list(self._queues.values())
        return {q.station_id: len(q) for q in queues}

    def clear(self) -> None:
        with self._lock:
            self._queues.clear()
