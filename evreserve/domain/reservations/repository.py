"""Reservation repository - Database operations for reservations"""

import functools
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from ...errors import StoreUnavailable
from ...models import (
    Connector,
    ConnectorBookingGuard,
    Reservation,
    ReservationTransition,
    SettlementEvent,
    Vehicle,
)
from .state_machine import ACTIVE_STATUSES, ReservationStatus, TransitionPlan
from .time_window import TimeWindow

logger = logging.getLogger(__name__)

ACTIVE_STATUS_VALUES = [status.value for status in ACTIVE_STATUSES]


def translate_store_errors(func):
    """Surface connection-level database failures as StoreUnavailable"""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, InterfaceError) as e:
            logger.error(f"❌ Reservation store unavailable in {func.__name__}: {e}")
            raise StoreUnavailable("Reservation store is temporarily unavailable") from e

    return wrapper


class CatalogRepository:
    """Read-only lookups into station and vehicle data"""

    @staticmethod
    @translate_store_errors
    def get_connector(db: Session, connector_id: int) -> Optional[Connector]:
        return db.query(Connector).filter(Connector.id == connector_id).first()

    @staticmethod
    @translate_store_errors
    def get_vehicle(db: Session, vehicle_id: int) -> Optional[Vehicle]:
        return db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()


class ReservationRepository:
    """Repository for reservation database operations"""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    @translate_store_errors
    def get_by_id(db: Session, reservation_id: int) -> Optional[Reservation]:
        # Always re-read: a loaded copy may predate a write made by another session
        return db.query(Reservation).populate_existing().filter(Reservation.id == reservation_id).first()

    @staticmethod
    @translate_store_errors
    def get_by_verification_code(db: Session, code: str, active_only: bool = True) -> Optional[Reservation]:
        query = db.query(Reservation).populate_existing().filter(Reservation.verification_code == code)
        if active_only:
            query = query.filter(Reservation.credential_active.is_(True))
        return query.first()

    @staticmethod
    @translate_store_errors
    def find_overlapping(
        db: Session, connector_id: int, window: TimeWindow, exclude_id: Optional[int] = None
    ) -> list[Reservation]:
        """Active reservations on the connector whose window overlaps ``window``"""
        query = db.query(Reservation).filter(
            Reservation.connector_id == connector_id,
            Reservation.status.in_(ACTIVE_STATUS_VALUES),
            Reservation.start_time < window.end,
            Reservation.end_time > window.start,
        )
        if exclude_id is not None:
            query = query.filter(Reservation.id != exclude_id)
        return query.order_by(Reservation.start_time.asc()).all()

    @staticmethod
    @translate_store_errors
    def list_active_for_connector(db: Session, connector_id: int) -> list[Reservation]:
        return (
            db.query(Reservation)
            .filter(
                Reservation.connector_id == connector_id,
                Reservation.status.in_(ACTIVE_STATUS_VALUES),
            )
            .order_by(Reservation.start_time.asc())
            .all()
        )

    @staticmethod
    @translate_store_errors
    def list_for_user(
        db: Session,
        user_id: str,
        status: Optional[str] = None,
        starts_after: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Reservation]:
        query = db.query(Reservation).filter(Reservation.user_id == user_id)
        if status:
            query = query.filter(Reservation.status == status)
        if starts_after:
            query = query.filter(Reservation.start_time >= starts_after)
        return query.order_by(Reservation.start_time.desc()).limit(limit).all()

    @staticmethod
    @translate_store_errors
    def list_for_station(
        db: Session,
        station_id: int,
        status: Optional[str] = None,
        window: Optional[TimeWindow] = None,
        limit: int = 200,
    ) -> list[Reservation]:
        query = db.query(Reservation).filter(Reservation.station_id == station_id)
        if status:
            query = query.filter(Reservation.status == status)
        if window:
            query = query.filter(
                Reservation.start_time < window.end, Reservation.end_time > window.start
            )
        return query.order_by(Reservation.start_time.desc()).limit(limit).all()

    @staticmethod
    @translate_store_errors
    def find_overdue_pending_ids(db: Session, now: datetime, limit: int) -> list[int]:
        rows = (
            db.query(Reservation.id)
            .filter(
                Reservation.status == ReservationStatus.PENDING.value,
                Reservation.payment_deadline <= now,
            )
            .order_by(Reservation.payment_deadline.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    @staticmethod
    @translate_store_errors
    def find_no_show_candidate_ids(db: Session, checked_in_before: datetime, limit: int) -> list[int]:
        rows = (
            db.query(Reservation.id)
            .filter(
                Reservation.status == ReservationStatus.CHECKED_IN.value,
                Reservation.charging_started_at.is_(None),
                Reservation.checked_in_at <= checked_in_before,
            )
            .order_by(Reservation.checked_in_at.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    @staticmethod
    @translate_store_errors
    def find_reminder_due_ids(db: Session, now: datetime, deadline_before: datetime, limit: int) -> list[int]:
        rows = (
            db.query(Reservation.id)
            .filter(
                Reservation.status == ReservationStatus.PENDING.value,
                Reservation.reminder_sent_at.is_(None),
                Reservation.payment_deadline > now,
                Reservation.payment_deadline <= deadline_before,
            )
            .order_by(Reservation.payment_deadline.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    @translate_store_errors
    def ensure_connector_guard(db: Session, connector_id: int) -> None:
        """Create the connector's guard row once; commits on its own"""
        if db.get(ConnectorBookingGuard, connector_id) is not None:
            db.commit()
            return
        db.add(ConnectorBookingGuard(connector_id=connector_id, version=0))
        try:
            db.commit()
        except IntegrityError:
            # Another booking created it first
            db.rollback()

    @staticmethod
    @translate_store_errors
    def lock_connector(db: Session, connector_id: int) -> None:
        """
        Take the per-connector booking lock for the rest of the transaction.
        Must be the first write of the booking transaction.
        """
        updated = (
            db.query(ConnectorBookingGuard)
            .filter(ConnectorBookingGuard.connector_id == connector_id)
            .update(
                {ConnectorBookingGuard.version: ConnectorBookingGuard.version + 1},
                synchronize_session=False,
            )
        )
        if updated != 1:
            raise StoreUnavailable(f"Booking guard missing for connector {connector_id}")

    @staticmethod
    @translate_store_errors
    def add_reservation(db: Session, reservation: Reservation, trigger: str, now: datetime) -> Reservation:
        db.add(reservation)
        db.flush()
        db.add(
            ReservationTransition(
                reservation_id=reservation.id,
                from_status=None,
                to_status=reservation.status,
                trigger=trigger,
                created_at=now,
            )
        )
        db.flush()
        return reservation

    @staticmethod
    @translate_store_errors
    def compare_and_set(db: Session, reservation_id: int, plan: TransitionPlan, now: datetime) -> bool:
        """
        Apply ``plan`` only if the reservation is still in ``plan.from_status``.
        Returns False when another writer got there first.
        """
        values = dict(plan.updates)
        values["version"] = Reservation.version + 1
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status == plan.from_status.value,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            return False

        db.add(
            ReservationTransition(
                reservation_id=reservation_id,
                from_status=plan.from_status.value,
                to_status=plan.to_status.value,
                trigger=plan.trigger.value,
                note=plan.note,
                created_at=now,
            )
        )
        db.flush()
        return True

    @staticmethod
    @translate_store_errors
    def mark_charging_started(db: Session, reservation_id: int, now: datetime) -> bool:
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status == ReservationStatus.CHECKED_IN.value,
                Reservation.charging_started_at.is_(None),
            )
            .update(
                {
                    "charging_started_at": now,
                    "updated_at": now,
                    "version": Reservation.version + 1,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    @translate_store_errors
    def claim_reminder(db: Session, reservation_id: int, now: datetime) -> bool:
        """Mark the reminder as sent; False if it was already sent or the hold is gone"""
        updated = (
            db.query(Reservation)
            .filter(
                Reservation.id == reservation_id,
                Reservation.status == ReservationStatus.PENDING.value,
                Reservation.reminder_sent_at.is_(None),
            )
            .update({"reminder_sent_at": now}, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    @translate_store_errors
    def record_settlement(
        db: Session,
        reservation_id: int,
        outcome: str,
        gateway_ref: str,
        amount: Optional[float],
        now: datetime,
    ) -> Optional[SettlementEvent]:
        """
        Insert the callback's dedup row inside a savepoint.
        Returns None if this exact callback was already recorded.
        """
        settlement = SettlementEvent(
            reservation_id=reservation_id,
            outcome=outcome,
            gateway_ref=gateway_ref,
            amount=amount,
            applied=False,
            received_at=now,
        )
        try:
            with db.begin_nested():
                db.add(settlement)
        except IntegrityError:
            return None
        return settlement
