"""
Connector availability index

In-memory, per-connector view of the windows currently held by active reservations.
It is a cache over the reservation store, never the source of truth:

- connectors are loaded lazily from the store and reloaded once older than ``ttl_seconds``
  (picks up writes made by other processes, e.g. the arq worker)
- the only mutation path is ``apply(reservation)``, called after a status write commits

Active windows on one connector never overlap, so sorting entries by start also
sorts them by end. A query bisects on start and scans backwards until an entry ends
at or before the window start: O(log n + k).
"""

import bisect
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, NamedTuple, Optional

from .state_machine import ReservationStatus, is_active
from .time_window import TimeWindow

logger = logging.getLogger(__name__)


class IndexEntry(NamedTuple):
    start: datetime
    end: datetime
    reservation_id: int
    status: str

    def to_dict(self) -> dict:
        return {
            "reservationId": self.reservation_id,
            "startTime": self.start.isoformat(),
            "endTime": self.end.isoformat(),
            "status": self.status,
        }


def entry_for(reservation) -> IndexEntry:
    return IndexEntry(
        reservation.start_time,
        reservation.end_time,
        reservation.id,
        ReservationStatus(reservation.status).value,
    )


class _ConnectorSlots:
    __slots__ = ("starts", "entries", "loaded_at")

    def __init__(self, entries: Iterable[IndexEntry], loaded_at: float):
        ordered = sorted(entries)
        self.starts = [entry.start for entry in ordered]
        self.entries = ordered
        self.loaded_at = loaded_at

    def position_of(self, reservation_id: int) -> Optional[int]:
        for i, entry in enumerate(self.entries):
            if entry.reservation_id == reservation_id:
                return i
        return None

    def overlapping(self, window: TimeWindow) -> list[IndexEntry]:
        # Everything before ``i`` starts before the window ends
        i = bisect.bisect_left(self.starts, window.end)
        found = []
        while i > 0:
            i -= 1
            entry = self.entries[i]
            if entry.end <= window.start:
                break
            found.append(entry)
        found.reverse()
        return found

    def insert(self, entry: IndexEntry) -> None:
        i = bisect.bisect_right(self.starts, entry.start)
        self.starts.insert(i, entry.start)
        self.entries.insert(i, entry)

    def remove_at(self, i: int) -> None:
        del self.starts[i]
        del self.entries[i]


class AvailabilityIndex:
    """Answers "can connector C host window W?" without scanning the reservations table"""

    def __init__(
        self,
        loader: Callable[[int], Iterable],
        ttl_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            loader: returns the active reservations of a connector from the store
            ttl_seconds: reload a connector after this many seconds (None = never)
        """
        self._loader = loader
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._connectors: dict[int, _ConnectorSlots] = {}
        self._lock = threading.RLock()

    # Queries ---------------------------------------------------------------

    def is_available(self, connector_id: int, window: TimeWindow) -> bool:
        return not self.conflicts(connector_id, window)

    def conflicts(self, connector_id: int, window: TimeWindow) -> list[IndexEntry]:
        with self._lock:
            return self._slots(connector_id).overlapping(window)

    def entries(self, connector_id: int) -> list[IndexEntry]:
        with self._lock:
            return list(self._slots(connector_id).entries)

    # Maintenance -------------------------------------------------------------

    def rebuild(self, connector_id: int) -> None:
        """
        Reload one connector from the store.
        Loads under the lock so an apply() arriving mid-load lands on the new snapshot.
        """
        with self._lock:
            reservations = self._loader(connector_id)
            entries = [entry_for(r) for r in reservations if is_active(r.status)]
            self._connectors[connector_id] = _ConnectorSlots(entries, self._monotonic())
        logger.debug(f"Availability index rebuilt for connector {connector_id}: {len(entries)} holds")

    def invalidate(self, connector_id: Optional[int] = None) -> None:
        with self._lock:
            if connector_id is None:
                self._connectors.clear()
            else:
                self._connectors.pop(connector_id, None)

    def apply(self, reservation) -> None:
        """
        Mirror a committed status write: active reservations hold their window,
        anything else releases it.
        """
        connector_id = reservation.connector_id
        with self._lock:
            slots = self._connectors.get(connector_id)
            if slots is None:
                # Not cached yet - the next query loads the committed state
                return

            i = slots.position_of(reservation.id)
            if i is not None:
                slots.remove_at(i)

            if not is_active(reservation.status):
                return

            entry = entry_for(reservation)
            clashes = slots.overlapping(TimeWindow(entry.start, entry.end))
            if clashes:
                logger.warning(
                    f"⚠️ Index for connector {connector_id} disagrees with the store "
                    f"(reservation {reservation.id} overlaps {[c.reservation_id for c in clashes]}), reloading"
                )
                self._connectors.pop(connector_id, None)
                return
            slots.insert(entry)

    # Internals -------------------------------------------------------------

    def _slots(self, connector_id: int) -> _ConnectorSlots:
        slots = self._connectors.get(connector_id)
        if slots is None or self._is_stale(slots):
            self.rebuild(connector_id)
            slots = self._connectors[connector_id]
        return slots

    def _is_stale(self, slots: _ConnectorSlots) -> bool:
        return self._ttl is not None and self._monotonic() - slots.loaded_at >= self._ttl
