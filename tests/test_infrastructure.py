import asyncio
import json
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import redis

from evreserve.domain.reservations.events import (
    PAYMENT_REMINDER,
    RedisBroadcaster,
    ReservationEventBus,
    ReservationStatusChanged,
)
from evreserve.errors import SlotUnavailable, StoreUnavailable
from evreserve.jobs import enqueue_reservation_jobs, expiry_job_id, reminder_job_id
from evreserve.utils.retry import retry_with_backoff
from evreserve.webhook_security import (
    WebhookSignatureError,
    sign_settlement_payload,
    verify_settlement_signature,
    verify_timestamp,
)

NOW = datetime(2030, 1, 1, 8, 0)


def status_event(**overrides) -> ReservationStatusChanged:
    fields = {
        "reservation_id": 7,
        "user_id": "user-1",
        "station_id": 1,
        "connector_id": 10,
        "previous_status": "pending",
        "status": "confirmed",
        "start_time": datetime(2030, 1, 1, 10, 0),
        "end_time": datetime(2030, 1, 1, 11, 0),
        "occurred_at": NOW,
    }
    fields.update(overrides)
    return ReservationStatusChanged(**fields)


class TestRetryWithBackoff(unittest.TestCase):
    def test_succeeds_after_transient_failures(self):
        sleeps = []
        outcomes = iter([StoreUnavailable("locked"), StoreUnavailable("locked"), "ok"])

        def flaky():
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        self.assertEqual(retry_with_backoff(flaky, retry_delay=0.5, sleep=sleeps.append), "ok")
        self.assertEqual(sleeps, [0.5, 1.0])

    def test_reraises_after_last_attempt(self):
        func = mock.Mock(side_effect=StoreUnavailable("down"))
        with self.assertLogs("evreserve.utils.retry", level="ERROR"):
            with self.assertRaises(StoreUnavailable):
                retry_with_backoff(func, max_retries=4, sleep=lambda _delay: None)
        self.assertEqual(func.call_count, 4)

    def test_conflicts_are_not_retried(self):
        func = mock.Mock(side_effect=SlotUnavailable("taken"))
        with self.assertRaises(SlotUnavailable):
            retry_with_backoff(func, sleep=lambda _delay: None)
        self.assertEqual(func.call_count, 1)


class TestWebhookSecurity(unittest.TestCase):
    SECRET = "whsec-test"
    BODY = b'{"reservationId": 1}'

    def test_valid_signature_with_and_without_prefix(self):
        signature = sign_settlement_payload(self.SECRET, "1000", self.BODY)
        verify_settlement_signature(self.BODY, signature, "1000", self.SECRET, now=1010)
        verify_settlement_signature(self.BODY, "sha256=" + signature, "1000", self.SECRET, now=1010)

    def test_tampered_body_is_rejected(self):
        signature = sign_settlement_payload(self.SECRET, "1000", self.BODY)
        with self.assertRaises(WebhookSignatureError):
            verify_settlement_signature(b'{"reservationId": 2}', signature, "1000", self.SECRET, now=1010)

    def test_signature_is_bound_to_timestamp(self):
        signature = sign_settlement_payload(self.SECRET, "1000", self.BODY)
        with self.assertRaises(WebhookSignatureError):
            verify_settlement_signature(self.BODY, signature, "1001", self.SECRET, now=1010)

    def test_missing_headers(self):
        with self.assertRaises(WebhookSignatureError):
            verify_settlement_signature(self.BODY, None, "1000", self.SECRET, now=1000)
        self.assertFalse(verify_timestamp(None))
        self.assertFalse(verify_timestamp("yesterday"))

    def test_replay_window(self):
        self.assertTrue(verify_timestamp("1000", now=1300))
        self.assertFalse(verify_timestamp("1000", now=1301))


class TestReservationEventBus(unittest.TestCase):
    def setUp(self):
        self.bus = ReservationEventBus(max_workers=2)

    def tearDown(self):
        self.bus.shutdown()

    def test_failing_listener_does_not_affect_others(self):
        received = []

        def broken(_event):
            raise RuntimeError("listener crashed")

        self.bus.subscribe(broken)
        self.bus.subscribe(received.append)

        with self.assertLogs("evreserve.domain.reservations.events", level="ERROR"):
            self.bus.publish(status_event())
            self.bus.drain(timeout=5)

        self.assertEqual([e.reservation_id for e in received], [7])

    def test_publish_does_not_wait_for_listeners(self):
        release = threading.Event()
        self.bus.subscribe(lambda _event: release.wait(5))

        self.bus.publish(status_event())
        # Still running in the pool; publish already returned
        release.set()
        self.bus.drain(timeout=5)

    def test_fast_listeners_never_stall_the_publisher(self):
        self.bus.subscribe(lambda _event: None)

        def publish_many():
            for _ in range(200):
                self.bus.publish(status_event())

        publisher = threading.Thread(target=publish_many)
        publisher.start()
        publisher.join(timeout=5)

        self.assertFalse(publisher.is_alive())
        self.bus.drain(timeout=5)

    def test_unsubscribe(self):
        received = []
        unsubscribe = self.bus.subscribe(received.append)
        unsubscribe()
        self.bus.publish(status_event())
        self.bus.drain(timeout=5)
        self.assertEqual(received, [])


class TestRedisBroadcaster(unittest.TestCase):
    def test_publishes_to_reservation_and_station_channels(self):
        client = mock.Mock()
        RedisBroadcaster(lambda: client)(status_event(kind=PAYMENT_REMINDER))

        channels = [c.args[0] for c in client.publish.call_args_list]
        self.assertEqual(channels, ["reservation:7", "station:1:reservations"])
        message = json.loads(client.publish.call_args_list[0].args[1])
        self.assertEqual(message["kind"], "payment_reminder")
        self.assertEqual(message["status"], "confirmed")

    def test_redis_outage_is_logged_not_raised(self):
        def unavailable():
            raise redis.ConnectionError("connection refused")

        with mock.patch("evreserve.domain.reservations.events.reset_redis_client") as reset:
            with self.assertLogs("evreserve.domain.reservations.events", level="WARNING"):
                RedisBroadcaster(unavailable)(status_event())
        reset.assert_called_once()


class TestDeferredJobs(unittest.TestCase):
    def run_enqueue(self, deadline, now, pool=None, side_effect=None):
        create_pool = mock.AsyncMock(return_value=pool, side_effect=side_effect)
        with mock.patch("evreserve.jobs.create_pool", create_pool):
            return asyncio.run(enqueue_reservation_jobs(7, deadline, timedelta(minutes=5), now))

    def test_expiry_and_reminder_are_deferred(self):
        pool = mock.AsyncMock()
        deadline = NOW + timedelta(minutes=15)

        self.assertTrue(self.run_enqueue(deadline, NOW, pool=pool))

        calls = pool.enqueue_job.await_args_list
        self.assertEqual([c.args for c in calls], [("expire_reservation_task", 7), ("payment_reminder_task", 7)])
        self.assertEqual(calls[0].kwargs["_job_id"], expiry_job_id(7))
        self.assertEqual(calls[0].kwargs["_defer_until"], deadline.replace(tzinfo=timezone.utc))
        self.assertEqual(calls[1].kwargs["_job_id"], reminder_job_id(7))
        self.assertEqual(calls[1].kwargs["_defer_until"], (deadline - timedelta(minutes=5)).replace(tzinfo=timezone.utc))
        pool.close.assert_awaited_once()

    def test_no_reminder_when_deadline_is_close(self):
        pool = mock.AsyncMock()
        self.assertTrue(self.run_enqueue(NOW + timedelta(minutes=3), NOW, pool=pool))
        self.assertEqual(pool.enqueue_job.await_count, 1)

    def test_unreachable_queue_fails_open(self):
        with self.assertLogs("evreserve.jobs", level="WARNING"):
            queued = self.run_enqueue(NOW + timedelta(minutes=15), NOW, side_effect=OSError("connection refused"))
        self.assertFalse(queued)


if __name__ == "__main__":
    unittest.main()
