import os
import shutil
import tempfile
import threading
import unittest
from datetime import timedelta

from evreserve.errors import InvalidTransition, ReservationError, SlotUnavailable
from evreserve.models import Reservation, ReservationTransition
from evreserve.scheduler import ExpiryScheduler
from tests.support import (
    CCS_CONNECTOR,
    OTHER_USER,
    OTHER_VEHICLE,
    STATION,
    USER,
    VEHICLE,
    ReservationTestCase,
    window,
)

WORKERS = 8


class FileStoreTestCase(ReservationTestCase):
    """Real file-backed store so every thread gets its own connection"""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="evreserve-")
        self.database_url = f"sqlite:///{os.path.join(self.tmpdir, 'reservations.db')}"
        super().setUp()

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_concurrently(self, calls):
        """Release every call at once; returns (results, errors) keyed by position"""
        barrier = threading.Barrier(len(calls))
        results, errors = {}, {}

        def worker(position, call):
            db = self.session_factory()
            try:
                service = self.make_service(db)
                barrier.wait(timeout=10)
                results[position] = call(service)
            except ReservationError as e:
                errors[position] = e
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        return results, errors

    def count(self, model, **filters) -> int:
        db = self.session_factory()
        try:
            return db.query(model).filter_by(**filters).count()
        finally:
            db.close()


class TestConcurrentBooking(FileStoreTestCase):
    def test_only_one_overlapping_booking_wins(self):
        windows = [window(10, 0, 11), window(10, 30, 11, 30), window(9, 30, 10, 30), window(10, 15, 10, 45)]
        calls = []
        for i in range(WORKERS):
            user, vehicle = (USER, VEHICLE) if i % 2 == 0 else (OTHER_USER, OTHER_VEHICLE)
            booking_window = windows[i % len(windows)]
            calls.append(
                lambda service, u=user, v=vehicle, w=booking_window: service.create_reservation(
                    u, v, STATION, CCS_CONNECTOR, w
                )
            )

        results, errors = self.run_concurrently(calls)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), WORKERS - 1)
        for error in errors.values():
            self.assertIsInstance(error, SlotUnavailable)
        self.assertEqual(self.count(Reservation, connector_id=CCS_CONNECTOR, status="pending"), 1)

    def test_disjoint_bookings_all_succeed(self):
        calls = [
            lambda service, h=hour: service.create_reservation(USER, VEHICLE, STATION, CCS_CONNECTOR, window(h, 0, h + 1))
            for hour in range(10, 10 + WORKERS)
        ]

        results, errors = self.run_concurrently(calls)

        self.assertEqual(errors, {})
        self.assertEqual(len(results), WORKERS)
        self.assertEqual(self.count(Reservation, status="pending"), WORKERS)
        for hour in range(10, 10 + WORKERS):
            self.assertFalse(self.service.get_availability(CCS_CONNECTOR, window(hour, 0, hour + 1)))


class TestPaymentExpiryRace(FileStoreTestCase):
    def test_exactly_one_of_payment_and_expiry_applies(self):
        reservation = self.book()
        # At the deadline both the payment and the expiry are allowed
        self.clock.set(reservation.payment_deadline)
        scheduler = ExpiryScheduler(self.session_factory, self.index, self.events, policy=self.policy, clock=self.clock)

        results, errors = self.run_concurrently(
            [
                lambda service: service.on_payment_outcome(reservation.id, "SUCCEEDED", 790.0, "race-1"),
                lambda service: service.expire_reservation(reservation.id),
            ]
        )

        self.assertEqual(len(results) + len(errors), 2)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(next(iter(errors.values())), InvalidTransition)

        final = self.reload(reservation.id)
        self.assertIn(final.status, ("confirmed", "expired"))
        self.assertEqual(self.count(ReservationTransition, reservation_id=reservation.id), 2)
        if final.status == "confirmed":
            self.assertTrue(final.is_paid)
        else:
            self.assertFalse(final.is_paid)

        # Whatever happened, a later sweep has nothing left to do
        self.clock.advance(minutes=1)
        self.assertEqual(scheduler.sweep_once()["expired"], 0)

    def test_redelivered_callbacks_apply_once(self):
        reservation = self.book()
        self.clock.advance(minutes=2)

        results, errors = self.run_concurrently(
            [
                lambda service: service.on_payment_outcome(reservation.id, "SUCCEEDED", 790.0, "dup-1")
                for _ in range(4)
            ]
        )

        self.assertEqual(errors, {})
        statuses = sorted(status for status, _reservation in results.values())
        self.assertEqual(statuses, ["applied", "duplicate", "duplicate", "duplicate"])
        self.assertEqual(self.reload(reservation.id).status, "confirmed")
        self.assertEqual(self.count(ReservationTransition, reservation_id=reservation.id), 2)

    def test_deadline_is_not_reached_early(self):
        reservation = self.book()
        self.clock.set(reservation.payment_deadline - timedelta(seconds=1))

        _results, errors = self.run_concurrently([lambda service: service.expire_reservation(reservation.id)])

        self.assertIsInstance(errors[0], InvalidTransition)
        self.assertEqual(self.reload(reservation.id).status, "pending")


if __name__ == "__main__":
    unittest.main()
