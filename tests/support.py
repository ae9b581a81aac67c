"""Shared fixtures for the reservation tests"""

import unittest
from datetime import datetime, timedelta

from evreserve.database import Base, build_engine, build_session_factory
from evreserve.domain.reservations.events import ReservationEventBus
from evreserve.domain.reservations.policy import BookingPolicy
from evreserve.domain.reservations.service import BookingService, build_availability_index
from evreserve.domain.reservations.time_window import TimeWindow
from evreserve.models import Connector, Reservation, SettlementEvent, Vehicle

SECRET_KEY = "test-secret-key"
USER = "user-1"
OTHER_USER = "user-2"
STATION = 1
CCS_CONNECTOR = 10
CHADEMO_CONNECTOR = 11
VEHICLE = 100
OTHER_VEHICLE = 101

# Everything happens on one fixed morning
T0 = datetime(2030, 1, 1, 8, 0)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


def at(hour: int, minute: int = 0) -> datetime:
    return T0.replace(hour=hour, minute=minute)


def window(start_hour: int, start_minute: int, end_hour: int, end_minute: int = 0) -> TimeWindow:
    return TimeWindow(at(start_hour, start_minute), at(end_hour, end_minute))


def seed_catalog(session_factory) -> None:
    db = session_factory()
    try:
        db.add_all(
            [
                Connector(
                    id=CCS_CONNECTOR,
                    station_id=STATION,
                    type="DC",
                    standard="CCS2",
                    max_kw=50,
                    price_per_kwh=15,
                    price_per_minute=0,
                    session_fee=40,
                ),
                Connector(
                    id=CHADEMO_CONNECTOR,
                    station_id=STATION,
                    type="DC",
                    standard="CHAdeMO",
                    max_kw=50,
                    price_per_kwh=15,
                    session_fee=0,
                ),
                Vehicle(id=VEHICLE, user_id=USER, make="Tata", model="Nexon EV", supported_standards=["CCS2", "Type2"], usable_kwh=60),
                Vehicle(id=OTHER_VEHICLE, user_id=OTHER_USER, make="BYD", model="Atto 3", supported_standards=["CCS2"], usable_kwh=None),
            ]
        )
        db.commit()
    finally:
        db.close()


def fetch(session_factory, reservation_id: int) -> Reservation:
    """Fresh copy of a reservation (with its history) read through a separate session"""
    db = session_factory()
    try:
        reservation = db.get(Reservation, reservation_id)
        if reservation is not None:
            list(reservation.transitions)
            db.expunge_all()
        return reservation
    finally:
        db.close()


def settlements(session_factory, reservation_id: int) -> list[SettlementEvent]:
    db = session_factory()
    try:
        rows = db.query(SettlementEvent).filter(SettlementEvent.reservation_id == reservation_id).all()
        db.expunge_all()
        return rows
    finally:
        db.close()


class ReservationTestCase(unittest.TestCase):
    """In-memory store, seeded catalog, frozen clock and a recording event listener"""

    database_url = "sqlite://"

    def setUp(self):
        self.engine = build_engine(self.database_url)
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = build_session_factory(self.engine)
        seed_catalog(self.session_factory)

        self.clock = FrozenClock()
        self.policy = BookingPolicy()
        self.index = build_availability_index(self.session_factory)
        self.events = ReservationEventBus()
        self.received = []
        self.events.subscribe(self.received.append)

        self.db = self.session_factory()
        self.service = self.make_service(self.db)

    def tearDown(self):
        self.db.close()
        self.events.shutdown()
        self.engine.dispose()

    def make_service(self, db) -> BookingService:
        return BookingService(
            db, self.index, self.events, policy=self.policy, clock=self.clock, secret_key=SECRET_KEY
        )

    def book(self, booking_window=None, user_id=USER, vehicle_id=VEHICLE, connector_id=CCS_CONNECTOR):
        reservation, _payload = self.service.create_reservation(
            user_id, vehicle_id, STATION, connector_id, booking_window or window(10, 0, 11, 0)
        )
        return reservation

    def pay(self, reservation_id: int, gateway_ref: str = "pay-1", outcome: str = "SUCCEEDED"):
        return self.service.on_payment_outcome(reservation_id, outcome, 790.0, gateway_ref)

    def reload(self, reservation_id: int) -> Reservation:
        return fetch(self.session_factory, reservation_id)

    def published(self, kind: str = "status_changed") -> list:
        self.events.drain(timeout=5)
        return [event for event in self.received if event.kind == kind]
