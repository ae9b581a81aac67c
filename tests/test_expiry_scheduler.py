import asyncio
import threading
import time
import unittest
from unittest import mock

from sqlalchemy.exc import DatabaseError

from evreserve.database import build_engine, build_session_factory
from evreserve.domain.reservations.service import BookingService, build_availability_index
from evreserve.errors import InvalidTransition, StoreUnavailable
from evreserve.scheduler import MAX_BACKOFF_SECONDS, ExpiryScheduler
from tests.support import (
    CCS_CONNECTOR,
    OTHER_USER,
    OTHER_VEHICLE,
    ReservationTestCase,
    at,
    window,
)


class SchedulerTestCase(ReservationTestCase):
    def setUp(self):
        super().setUp()
        self.sleeps = []
        self.scheduler = ExpiryScheduler(
            self.session_factory,
            self.index,
            self.events,
            policy=self.policy,
            clock=self.clock,
            interval_seconds=0.01,
            retry_delay=0.5,
            sleep=self.sleeps.append,
        )


class TestSweep(SchedulerTestCase):
    def test_hold_expires_and_slot_is_freed(self):
        reservation = self.book(window(10, 0, 11))
        self.assertFalse(self.service.get_availability(CCS_CONNECTOR, window(10, 0, 11)))

        self.clock.advance(minutes=16)
        summary = self.scheduler.sweep_once()

        self.assertEqual(summary["expired"], 1)
        expired = self.reload(reservation.id)
        self.assertEqual(expired.status, "expired")
        self.assertIsNone(expired.payment_deadline)
        self.assertFalse(expired.credential_active)
        self.assertTrue(self.service.get_availability(CCS_CONNECTOR, window(10, 0, 11)))

        again = self.book(window(10, 0, 11), user_id=OTHER_USER, vehicle_id=OTHER_VEHICLE)
        self.assertEqual(again.status, "pending")

    def test_hold_before_deadline_is_untouched(self):
        reservation = self.book()
        self.clock.advance(minutes=14)

        summary = self.scheduler.sweep_once()

        self.assertEqual(summary["expired"], 0)
        self.assertEqual(self.reload(reservation.id).status, "pending")

    def test_expiry_is_idempotent(self):
        reservation = self.book()
        self.clock.advance(minutes=20)

        self.assertEqual(self.scheduler.sweep_once()["expired"], 1)
        self.assertEqual(self.scheduler.sweep_once()["expired"], 0)
        self.assertFalse(self.scheduler.expire_one(reservation.id))

        history = self.reload(reservation.id).transitions
        self.assertEqual([t.to_status for t in history], ["pending", "expired"])

    def test_paid_hold_is_not_expired(self):
        reservation = self.book()
        self.pay(reservation.id)
        self.clock.advance(minutes=20)

        self.assertFalse(self.scheduler.expire_one(reservation.id))
        self.assertEqual(self.scheduler.sweep_once()["expired"], 0)
        self.assertEqual(self.reload(reservation.id).status, "confirmed")

    def test_late_payment_loses_to_expiry(self):
        reservation = self.book()
        self.clock.advance(minutes=16)
        self.scheduler.sweep_once()

        with self.assertRaises(InvalidTransition) as ctx:
            self.pay(reservation.id, gateway_ref="late-1")

        self.assertEqual(ctx.exception.details["currentStatus"], "expired")
        self.assertEqual(self.reload(reservation.id).status, "expired")

    def test_no_show_after_grace(self):
        reservation = self.book()
        self.pay(reservation.id)
        self.clock.set(at(10, 0))
        self.service.check_in(reservation.verification_code)

        self.clock.set(at(10, 10))
        self.assertEqual(self.scheduler.sweep_once()["no_show"], 0)

        self.clock.set(at(10, 16))
        self.assertEqual(self.scheduler.sweep_once()["no_show"], 1)
        self.assertEqual(self.reload(reservation.id).status, "no_show")

    def test_charging_session_is_never_a_no_show(self):
        reservation = self.book()
        self.pay(reservation.id)
        self.clock.set(at(10, 0))
        self.service.check_in(reservation.verification_code)
        self.service.record_charging_started(reservation.id)

        self.clock.set(at(10, 45))
        self.assertEqual(self.scheduler.sweep_once()["no_show"], 0)
        self.assertEqual(self.reload(reservation.id).status, "checked_in")

    def test_one_reminder_before_deadline(self):
        reservation = self.book()
        self.clock.advance(minutes=9)
        self.assertEqual(self.scheduler.sweep_once()["reminders"], 0)

        self.clock.advance(minutes=2)
        self.assertEqual(self.scheduler.sweep_once()["reminders"], 1)
        self.assertEqual(self.scheduler.sweep_once()["reminders"], 0)
        self.assertFalse(self.scheduler.send_reminder(reservation.id))

        reminders = self.published("payment_reminder")
        self.assertEqual(len(reminders), 1)
        self.assertEqual(reminders[0].reservation_id, reservation.id)

    def test_store_failures_are_retried_then_skipped(self):
        reservation = self.book()
        self.clock.advance(minutes=16)

        with mock.patch.object(
            BookingService, "expire_reservation", side_effect=StoreUnavailable("database is locked")
        ) as expire:
            summary = self.scheduler.sweep_once()

        self.assertEqual(expire.call_count, 3)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(self.sleeps, [0.5, 1.0])
        self.assertEqual(self.reload(reservation.id).status, "pending")

        # Next sweep picks it up again
        self.assertEqual(self.scheduler.sweep_once()["expired"], 1)

    def test_one_bad_reservation_does_not_block_the_rest(self):
        first = self.book(window(10, 0, 11))
        second = self.book(window(12, 0, 13))
        self.clock.advance(minutes=16)

        real_expire = BookingService.expire_reservation

        def flaky(service, reservation_id):
            if reservation_id == first.id:
                raise StoreUnavailable("connection reset")
            return real_expire(service, reservation_id)

        with mock.patch.object(BookingService, "expire_reservation", autospec=True, side_effect=flaky):
            summary = self.scheduler.sweep_once()

        self.assertEqual(summary["expired"], 1)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(self.reload(second.id).status, "expired")

    def test_unexpected_error_does_not_block_the_rest(self):
        first = self.book(window(10, 0, 11))
        second = self.book(window(12, 0, 13))
        self.clock.advance(minutes=16)

        real_expire = BookingService.expire_reservation

        def broken(service, reservation_id):
            if reservation_id == first.id:
                raise DatabaseError("UPDATE reservations", {}, Exception("disk image is malformed"))
            return real_expire(service, reservation_id)

        with mock.patch.object(BookingService, "expire_reservation", autospec=True, side_effect=broken):
            with self.assertLogs("evreserve.scheduler", level="ERROR"):
                summary = self.scheduler.sweep_once()

        self.assertEqual(summary["expired"], 1)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(self.reload(first.id).status, "pending")
        self.assertEqual(self.reload(second.id).status, "expired")
        # Not a store error, so no retries
        self.assertEqual(self.sleeps, [])

    def test_expiry_by_another_process_is_seen_immediately(self):
        reservation = self.book()
        self.assertFalse(self.service.get_availability(CCS_CONNECTOR, window(10, 0, 11)))

        # The arq worker keeps its own index
        worker_index = build_availability_index(self.session_factory)
        worker = ExpiryScheduler(self.session_factory, worker_index, policy=self.policy, clock=self.clock)
        self.clock.advance(minutes=16)
        self.assertEqual(worker.sweep_once()["expired"], 1)

        self.assertEqual(self.reload(reservation.id).status, "expired")
        self.assertTrue(self.service.get_availability(CCS_CONNECTOR, window(10, 0, 11)))
        self.assertEqual(self.service.list_conflicts(CCS_CONNECTOR, window(9, 0, 12)), [])


class TestSchedulerLifecycle(SchedulerTestCase):
    def test_backoff_grows_and_is_capped(self):
        self.scheduler.interval_seconds = 15
        self.assertEqual(self.scheduler.next_delay(), 15)
        self.scheduler.consecutive_failures = 1
        self.assertEqual(self.scheduler.next_delay(), 30)
        self.scheduler.consecutive_failures = 3
        self.assertEqual(self.scheduler.next_delay(), 120)
        self.scheduler.consecutive_failures = 10
        self.assertEqual(self.scheduler.next_delay(), MAX_BACKOFF_SECONDS)

    def test_start_and_stop(self):
        reservation = self.book()
        self.clock.advance(minutes=16)
        expired = threading.Event()
        self.events.subscribe(lambda event: event.status == "expired" and expired.set())

        async def scenario():
            await self.scheduler.start()
            self.assertTrue(self.scheduler.running)
            deadline = time.monotonic() + 5
            while not expired.is_set() and time.monotonic() < deadline:
                await asyncio.sleep(0.02)
            await self.scheduler.stop()

        asyncio.run(scenario())

        self.assertFalse(self.scheduler.running)
        self.assertTrue(expired.is_set())
        self.assertEqual(self.reload(reservation.id).status, "expired")

    def test_repeated_sweep_failures_raise_an_alert(self):
        # Parent directory does not exist, so every connection attempt fails
        broken = build_session_factory(build_engine("sqlite:////nonexistent-dir/evreserve.db"))
        scheduler = ExpiryScheduler(
            broken,
            self.index,
            policy=self.policy,
            clock=self.clock,
            interval_seconds=0.001,
            alert_after=2,
        )

        async def scenario():
            await scheduler.start()
            deadline = time.monotonic() + 5
            while scheduler.consecutive_failures < 2 and time.monotonic() < deadline:
                await asyncio.sleep(0.01)
            await scheduler.stop()

        with self.assertLogs("evreserve.scheduler", level="ERROR") as logs:
            asyncio.run(scenario())

        self.assertGreaterEqual(scheduler.consecutive_failures, 2)
        self.assertTrue(any("in a row" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
