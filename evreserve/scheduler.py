"""
Expiry scheduler
Releases unpaid holds once their payment deadline passes, marks no-shows and sends
payment reminders.

pending    → expired   (payment deadline passed, still unpaid)
checked_in → no_show   (charging never started within the grace period)

Every reservation is handled in its own session and transaction, so one bad row
never blocks or rolls back the rest of a sweep, and no lock is held across the batch.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from . import config
from .domain.reservations.availability import AvailabilityIndex
from .domain.reservations.events import ReservationEventBus
from .domain.reservations.policy import BookingPolicy
from .domain.reservations.repository import ReservationRepository
from .domain.reservations.service import BookingService
from .domain.reservations.time_window import utcnow
from .errors import InvalidTransition, ReservationError, StoreUnavailable
from .utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Longest pause between sweeps while the store keeps failing
MAX_BACKOFF_SECONDS = 300

DONE = "done"
SKIPPED = "skipped"
FAILED = "failed"


class ExpiryScheduler:
    def __init__(
        self,
        session_factory,
        index: AvailabilityIndex,
        events: Optional[ReservationEventBus] = None,
        policy: Optional[BookingPolicy] = None,
        clock: Callable = utcnow,
        interval_seconds: float = config.EXPIRY_SWEEP_INTERVAL_SECONDS,
        batch_size: int = config.EXPIRY_SWEEP_BATCH_SIZE,
        alert_after: int = config.EXPIRY_SWEEP_ALERT_AFTER,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.index = index
        self.events = events
        self.policy = policy or BookingPolicy.from_config()
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.alert_after = alert_after
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="expiry-scheduler")
        logger.info(f"⏱️ Expiry scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("⏹️ Expiry scheduler stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            delay = self.interval_seconds
            try:
                await asyncio.to_thread(self.sweep_once)
                self.consecutive_failures = 0
            except Exception as e:
                self.consecutive_failures += 1
                delay = self.next_delay()
                if self.consecutive_failures >= self.alert_after:
                    logger.error(
                        f"🚨 Expiry sweep failed {self.consecutive_failures} times in a row, "
                        f"unpaid holds are not being released: {e}"
                    )
                else:
                    logger.warning(f"⚠️ Expiry sweep failed, retrying in {delay:.0f}s: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def next_delay(self) -> float:
        """Interval doubled for every consecutive failure, capped"""
        if self.consecutive_failures == 0:
            return self.interval_seconds
        return min(self.interval_seconds * (2**self.consecutive_failures), MAX_BACKOFF_SECONDS)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep_once(self) -> dict:
        """
        One pass over overdue holds, no-show candidates and due reminders

        Returns:
            dict: counts per action plus skipped (already moved on) and failed
        """
        now = self.clock()
        db = self.session_factory()
        try:
            overdue = ReservationRepository.find_overdue_pending_ids(db, now, self.batch_size)
            no_shows = ReservationRepository.find_no_show_candidate_ids(
                db, now - self.policy.no_show_grace, self.batch_size
            )
            reminders = ReservationRepository.find_reminder_due_ids(
                db, now, now + self.policy.reminder_lead, self.batch_size
            )
        finally:
            db.close()

        summary = {"expired": 0, "no_show": 0, "reminders": 0, "skipped": 0, "failed": 0}

        for reservation_id in overdue:
            self._tally(summary, "expired", self._process(reservation_id, "expire", self._expire))
        for reservation_id in no_shows:
            self._tally(summary, "no_show", self._process(reservation_id, "mark no-show", self._mark_no_show))
        for reservation_id in reminders:
            self._tally(summary, "reminders", self._process(reservation_id, "remind", self._remind))

        if any(summary[key] for key in ("expired", "no_show", "reminders", "failed")):
            logger.info(f"🧹 Expiry sweep: {summary}")
        return summary

    def expire_one(self, reservation_id: int) -> bool:
        """Expire a single hold (deferred job entry point). False if it had already moved on."""
        return self._process(reservation_id, "expire", self._expire) == DONE

    def send_reminder(self, reservation_id: int) -> bool:
        return self._process(reservation_id, "remind", self._remind) == DONE

    @staticmethod
    def _tally(summary: dict, key: str, result: str) -> None:
        if result == DONE:
            summary[key] += 1
        elif result == SKIPPED:
            summary["skipped"] += 1
        else:
            summary["failed"] += 1

    def _process(self, reservation_id: int, action: str, unit: Callable[[BookingService, int], bool]) -> str:
        def attempt():
            db = self.session_factory()
            try:
                return unit(self._service(db), reservation_id)
            finally:
                db.close()

        try:
            done = retry_with_backoff(
                attempt,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                description=f"{action} reservation {reservation_id}",
                sleep=self._sleep,
            )
        except InvalidTransition:
            # Paid, canceled or swept by someone else in the meantime
            logger.debug(f"Reservation {reservation_id} already moved on, nothing to {action}")
            return SKIPPED
        except StoreUnavailable:
            return FAILED
        except ReservationError as e:
            logger.warning(f"⚠️ Could not {action} reservation {reservation_id}: {e.message}")
            return FAILED
        except Exception:
            # Log and move on to the next reservation
            logger.exception(f"❌ Unexpected error trying to {action} reservation {reservation_id}")
            return FAILED
        return DONE if done else SKIPPED

    def _service(self, db) -> BookingService:
        return BookingService(db, self.index, self.events, policy=self.policy, clock=self.clock)

    @staticmethod
    def _expire(service: BookingService, reservation_id: int) -> bool:
        service.expire_reservation(reservation_id)
        return True

    @staticmethod
    def _mark_no_show(service: BookingService, reservation_id: int) -> bool:
        service.mark_no_show(reservation_id)
        return True

    @staticmethod
    def _remind(service: BookingService, reservation_id: int) -> bool:
        return service.send_payment_reminder(reservation_id)
