"""
Reservation status-change stream

Listeners are fire-and-forget: they run on a small thread pool after the status write
has committed, so a slow or failing listener never blocks or rolls back a transition.
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Literal, Optional

import redis
from pydantic import BaseModel

from ...redis_client import get_redis_client, reset_redis_client

logger = logging.getLogger(__name__)

STATUS_CHANGED = "status_changed"
PAYMENT_REMINDER = "payment_reminder"


class ReservationStatusChanged(BaseModel):
    kind: Literal["status_changed", "payment_reminder"] = STATUS_CHANGED
    reservation_id: int
    user_id: str
    station_id: int
    connector_id: int
    previous_status: Optional[str] = None
    status: str
    start_time: datetime
    end_time: datetime
    payment_deadline: Optional[datetime] = None
    is_paid: bool = False
    occurred_at: datetime

    @classmethod
    def from_reservation(
        cls,
        reservation,
        occurred_at: datetime,
        previous_status: Optional[str] = None,
        kind: str = STATUS_CHANGED,
    ) -> "ReservationStatusChanged":
        return cls(
            kind=kind,
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            station_id=reservation.station_id,
            connector_id=reservation.connector_id,
            previous_status=previous_status,
            status=reservation.status,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            payment_deadline=reservation.payment_deadline,
            is_paid=bool(reservation.is_paid),
            occurred_at=occurred_at,
        )


Listener = Callable[[ReservationStatusChanged], None]


class ReservationEventBus:
    def __init__(self, max_workers: int = 4):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reservation-events")
        self._pending: set[Future] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it"""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ReservationStatusChanged) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            future = self._executor.submit(self._deliver, listener, event)
            with self._lock:
                self._pending.add(future)
            # Runs _forget immediately if the listener already finished, so never under the lock
            future.add_done_callback(self._forget)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)"""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _deliver(listener: Listener, event: ReservationStatusChanged) -> None:
        try:
            listener(event)
        except Exception as e:
            logger.error(
                f"❌ Reservation event listener {getattr(listener, '__name__', listener)!r} failed "
                f"for reservation {event.reservation_id}: {e}"
            )


class RedisBroadcaster:
    """Publishes status events to per-reservation and per-station Redis channels"""

    def __init__(self, client_factory: Callable[[], redis.Redis] = get_redis_client):
        self._client_factory = client_factory

    @staticmethod
    def channels_for(event: ReservationStatusChanged) -> list[str]:
        return [
            f"reservation:{event.reservation_id}",
            f"station:{event.station_id}:reservations",
        ]

    def __call__(self, event: ReservationStatusChanged) -> None:
        message = json.dumps(event.model_dump(mode="json"))
        try:
            client = self._client_factory()
            for channel in self.channels_for(event):
                client.publish(channel, message)
        except redis.RedisError as e:
            # Fail open: a missed broadcast is recovered by clients polling the API
            logger.warning(f"⚠️ Broadcast for reservation {event.reservation_id} skipped: {e}")
            reset_redis_client()
            return
        logger.debug(f"📣 Broadcast {event.kind} for reservation {event.reservation_id}")
