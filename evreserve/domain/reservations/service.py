"""Reservation service - Booking and lifecycle business logic"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from ...errors import (
    ConnectorNotFound,
    InvalidTransition,
    NotFound,
    NotOwner,
    SlotUnavailable,
    StoreUnavailable,
    VehicleIncompatible,
    WindowInvalid,
)
from ...models import Reservation
from .availability import AvailabilityIndex, IndexEntry, entry_for
from .credentials import generate_verification_code, issue_payload, resolve_code
from .events import PAYMENT_REMINDER, STATUS_CHANGED, ReservationEventBus, ReservationStatusChanged
from .policy import BookingPolicy
from .repository import CatalogRepository, ReservationRepository
from .state_machine import ReservationStatus, Trigger, plan_transition
from .time_window import TimeWindow, utcnow

logger = logging.getLogger(__name__)

# Assumed battery size when the vehicle record does not say
DEFAULT_USABLE_KWH = 50.0

SLOT_GRID_OPENS = time(6, 0)
SLOT_GRID_CLOSES = time(22, 0)
SLOT_GRID_STEP = timedelta(minutes=30)

PAYMENT_OUTCOME_TRIGGERS = {
    "SUCCEEDED": Trigger.PAYMENT_SUCCEEDED,
    "FAILED": Trigger.PAYMENT_DECLINED,
    "CANCELED": Trigger.PAYMENT_DECLINED,
}

SETTLEMENT_APPLIED = "applied"
SETTLEMENT_DUPLICATE = "duplicate"


def build_availability_index(session_factory, ttl_seconds: Optional[float] = None) -> AvailabilityIndex:
    """Availability index that loads connectors through short-lived sessions of its own"""

    def load_active(connector_id: int) -> list[Reservation]:
        db = session_factory()
        try:
            return ReservationRepository.list_active_for_connector(db, connector_id)
        finally:
            db.close()

    return AvailabilityIndex(load_active, ttl_seconds=ttl_seconds)


def estimate_cost(window: TimeWindow, max_kw: float, price_per_kwh: float, session_fee: float, usable_kwh) -> float:
    """Energy the vehicle can take in the window, capped by its battery, plus the flat session fee"""
    hours = window.duration.total_seconds() / 3600
    energy_kwh = min(usable_kwh or DEFAULT_USABLE_KWH, hours * max_kw)
    return round(energy_kwh * price_per_kwh + (session_fee or 0), 2)


class BookingService:
    """Service layer for reservation business logic"""

    def __init__(
        self,
        db: Session,
        index: AvailabilityIndex,
        events: Optional[ReservationEventBus] = None,
        policy: Optional[BookingPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        catalog=CatalogRepository,
        secret_key: Optional[str] = None,
    ):
        self.db = db
        self.index = index
        self.events = events
        self.policy = policy or BookingPolicy.from_config()
        self.clock = clock
        self.catalog = catalog
        self.repo = ReservationRepository()
        self.secret_key = secret_key

    # ============================================================================
    # BOOKING
    # ============================================================================

    def create_reservation(
        self,
        user_id: str,
        vehicle_id: int,
        station_id: int,
        connector_id: int,
        window: TimeWindow,
    ) -> tuple[Reservation, str]:
        """
        Hold ``connector_id`` for ``window`` as a PENDING reservation

        Returns the reservation and the signed check-in payload. The payload only works
        once the reservation is confirmed.
        """
        now = self.clock()
        self._validate_window(window, now)

        try:
            estimated_cost = self._check_compatibility(user_id, vehicle_id, station_id, connector_id, window)
            # Also ends the catalog read; the index loads through its own sessions
            self.repo.ensure_connector_guard(self.db, connector_id)
        except Exception:
            self.db.rollback()
            raise

        if self.index.conflicts(connector_id, window):
            # Cheap rejection, but only after a reload proves the cache is not stale
            self.index.rebuild(connector_id)
            cached = self.index.conflicts(connector_id, window)
            if cached:
                raise self._slot_unavailable(connector_id, window, [(e.start, e.end) for e in cached])

        try:
            self.repo.lock_connector(self.db, connector_id)
            overlapping = self.repo.find_overlapping(self.db, connector_id, window)
            if overlapping:
                conflicts = [(r.start_time, r.end_time) for r in overlapping]
                self.db.rollback()
                # Store knows about a hold the cache missed
                self.index.invalidate(connector_id)
                raise self._slot_unavailable(connector_id, window, conflicts)

            reservation = Reservation(
                user_id=user_id,
                vehicle_id=vehicle_id,
                station_id=station_id,
                connector_id=connector_id,
                start_time=window.start,
                end_time=window.end,
                status=ReservationStatus.PENDING.value,
                payment_deadline=now + self.policy.payment_grace,
                is_paid=False,
                estimated_cost=estimated_cost,
                currency=self.policy.currency,
                verification_code=generate_verification_code(),
                credential_active=False,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self.repo.add_reservation(self.db, reservation, "create", now)
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"✅ Reservation {reservation.id} held: connector {connector_id} "
            f"{window.start.isoformat()} → {window.end.isoformat()}, pay by {reservation.payment_deadline.isoformat()}"
        )

        self.index.apply(reservation)
        self._publish(reservation, now, previous_status=None)
        return reservation, issue_payload(reservation.id, reservation.verification_code, self.secret_key)

    def _check_compatibility(
        self, user_id: str, vehicle_id: int, station_id: int, connector_id: int, window: TimeWindow
    ) -> float:
        """Connector belongs to the station, vehicle to the user, and the plug fits. Returns the estimated cost."""
        connector = self.catalog.get_connector(self.db, connector_id)
        if not connector or connector.station_id != station_id:
            raise ConnectorNotFound(
                "Connector not found at this station",
                {"connectorId": connector_id, "stationId": station_id},
            )

        vehicle = self.catalog.get_vehicle(self.db, vehicle_id)
        if not vehicle or vehicle.user_id != user_id:
            raise NotFound("Vehicle not found", {"vehicleId": vehicle_id})

        supported = list(vehicle.supported_standards or [])
        if connector.standard not in supported:
            raise VehicleIncompatible(
                f"Vehicle is not compatible with {connector.standard} connector",
                {"vehicleConnectors": supported, "stationConnector": connector.standard},
            )

        return estimate_cost(
            window, connector.max_kw, connector.price_per_kwh, connector.session_fee, vehicle.usable_kwh
        )

    def _validate_window(self, window: TimeWindow, now: datetime) -> None:
        if window.start <= now:
            raise WindowInvalid("Start time must be in the future", window.to_dict())
        if window.duration < self.policy.min_duration:
            raise WindowInvalid(
                f"Reservation must be at least {self._minutes(self.policy.min_duration)} minutes",
                window.to_dict(),
            )
        if window.duration > self.policy.max_duration:
            raise WindowInvalid(
                f"Reservation cannot exceed {self._minutes(self.policy.max_duration)} minutes",
                window.to_dict(),
            )

    @staticmethod
    def _slot_unavailable(connector_id: int, window: TimeWindow, conflicts) -> SlotUnavailable:
        logger.info(f"🚫 Connector {connector_id} busy for {window.start.isoformat()} → {window.end.isoformat()}")
        return SlotUnavailable(
            "Time slot not available",
            {
                "connectorId": connector_id,
                "conflictingReservations": [
                    {"startTime": start.isoformat(), "endTime": end.isoformat()} for start, end in conflicts
                ],
            },
        )

    @staticmethod
    def _minutes(delta: timedelta) -> int:
        return int(delta.total_seconds() // 60)

    # ============================================================================
    # LIFECYCLE TRANSITIONS
    # ============================================================================

    def cancel_reservation(
        self, reservation_id: int, requesting_user_id: str, reason: Optional[str] = None
    ) -> Reservation:
        """Cancel a pending hold, or a confirmed reservation ahead of the cutoff"""
        reservation = self._load(reservation_id)
        if reservation.user_id != requesting_user_id:
            self.db.rollback()
            raise NotOwner("Not authorized to cancel this reservation", {"reservationId": reservation_id})
        return self._transition(reservation, Trigger.USER_CANCEL, note=reason or "Canceled by user")

    def check_in(self, credential: str) -> Reservation:
        """Check in with the typed verification code or the scanned payload"""
        code = resolve_code(credential, self.secret_key)
        reservation = self.repo.get_by_verification_code(self.db, code, active_only=False)
        if not reservation:
            self.db.rollback()
            raise NotFound("Invalid verification code")
        return self._transition(reservation, Trigger.CHECK_IN)

    def record_charging_started(self, reservation_id: int) -> Reservation:
        """Mark the moment energy started flowing for a checked-in reservation"""
        now = self.clock()
        try:
            started = self.repo.mark_charging_started(self.db, reservation_id, now)
            if not started:
                reservation = self.repo.get_by_id(self.db, reservation_id)
                self.db.rollback()
                if not reservation:
                    raise NotFound("Reservation not found", {"reservationId": reservation_id})
                raise InvalidTransition(
                    "Charging can only start once, on a checked-in reservation",
                    {"currentStatus": reservation.status},
                )
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        reservation = self._load(reservation_id)
        self.db.refresh(reservation)
        self._release()
        logger.info(f"⚡ Charging started for reservation {reservation_id}")
        return reservation

    def complete_session(self, reservation_id: int, actual_cost: float) -> Reservation:
        reservation = self._load(reservation_id)
        return self._transition(reservation, Trigger.COMPLETE, actual_cost=actual_cost)

    def expire_reservation(self, reservation_id: int) -> Reservation:
        """PENDING → EXPIRED once the payment deadline has passed"""
        reservation = self._load(reservation_id)
        return self._transition(reservation, Trigger.EXPIRE, note="Payment deadline passed")

    def mark_no_show(self, reservation_id: int) -> Reservation:
        reservation = self._load(reservation_id)
        return self._transition(reservation, Trigger.MARK_NO_SHOW, note="Charging never started")

    def send_payment_reminder(self, reservation_id: int) -> bool:
        """Emit the one payment reminder for a pending hold. False if already sent or no longer pending."""
        now = self.clock()
        try:
            claimed = self.repo.claim_reminder(self.db, reservation_id, now)
            if not claimed:
                self.db.rollback()
                return False
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        reservation = self._load(reservation_id)
        self._release()
        logger.info(f"⏰ Payment reminder for reservation {reservation_id}")
        self._publish(reservation, now, previous_status=reservation.status, kind=PAYMENT_REMINDER)
        return True

    # ============================================================================
    # SETTLEMENT
    # ============================================================================

    def on_payment_outcome(
        self,
        reservation_id: int,
        outcome: str,
        amount: Optional[float],
        gateway_ref: str,
    ) -> tuple[str, Reservation]:
        """
        Apply a settlement gateway callback exactly once

        The dedup row and the status write share one transaction, so a redelivered
        callback finds its row and changes nothing. A callback that loses the race
        against expiry keeps its dedup row (applied=False) and raises InvalidTransition.
        """
        outcome = outcome.strip().upper()
        trigger = PAYMENT_OUTCOME_TRIGGERS.get(outcome)
        if trigger is None:
            raise InvalidTransition(f"Unknown payment outcome {outcome!r}", {"outcome": outcome})

        now = self.clock()
        try:
            reservation = self._load(reservation_id)
            settlement = self.repo.record_settlement(self.db, reservation_id, outcome, gateway_ref, amount, now)
            if settlement is None:
                self.db.rollback()
                self.db.refresh(reservation)
                self._release()
                logger.info(f"🔁 Duplicate settlement callback {gateway_ref} ({outcome}) for reservation {reservation_id}")
                return SETTLEMENT_DUPLICATE, reservation

            previous_status = reservation.status
            rejection = None
            try:
                plan = plan_transition(
                    reservation, trigger, now, self.policy, note=f"Gateway {outcome.lower()} ({gateway_ref})"
                )
            except InvalidTransition as e:
                rejection = e
            else:
                if not self.repo.compare_and_set(self.db, reservation_id, plan, now):
                    rejection = InvalidTransition(
                        "Reservation changed before the payment outcome could be applied",
                        {"trigger": trigger.value},
                    )

            if rejection is not None:
                # Keep the dedup row so redeliveries stay no-ops
                self._commit()
                self.db.refresh(reservation)
                self._release()
                if trigger == Trigger.PAYMENT_SUCCEEDED:
                    logger.error(
                        f"💸 Payment {gateway_ref} for reservation {reservation_id} arrived after the hold "
                        f"became {reservation.status} - refund required"
                    )
                else:
                    logger.warning(
                        f"⚠️ {outcome} callback {gateway_ref} ignored: reservation {reservation_id} is {reservation.status}"
                    )
                rejection.details.setdefault("currentStatus", reservation.status)
                rejection.details.setdefault("reservationId", reservation_id)
                raise rejection

            settlement.applied = True
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(reservation)
        self._release()
        logger.info(f"💳 Reservation {reservation_id}: {previous_status} → {reservation.status} ({outcome})")
        self.index.apply(reservation)
        self._publish(reservation, now, previous_status=previous_status)
        return SETTLEMENT_APPLIED, reservation

    # ============================================================================
    # QUERIES
    # ============================================================================

    def get_availability(self, connector_id: int, window: TimeWindow) -> bool:
        self._require_connector(connector_id)
        return not self._confirmed_conflicts(connector_id, window)

    def list_conflicts(self, connector_id: int, window: TimeWindow) -> list[IndexEntry]:
        self._require_connector(connector_id)
        return self._confirmed_conflicts(connector_id, window)

    def get_available_slots(self, connector_id: int, day: date) -> list[dict]:
        """30-minute grid over the station's opening hours; slots already started are unavailable"""
        self._require_connector(connector_id)
        now = self.clock()

        opens = datetime.combine(day, SLOT_GRID_OPENS)
        closes = datetime.combine(day, SLOT_GRID_CLOSES)
        held = self._confirmed_conflicts(connector_id, TimeWindow(opens, closes))

        slots = []
        slot_start = opens
        while slot_start < closes:
            slot = TimeWindow(slot_start, slot_start + SLOT_GRID_STEP)
            taken = any(entry.start < slot.end and slot.start < entry.end for entry in held)
            slots.append({"startTime": slot.start, "endTime": slot.end, "available": slot.start > now and not taken})
            slot_start = slot.end
        return slots

    def get_reservation(self, reservation_id: int, user_id: str) -> Reservation:
        reservation = self._load(reservation_id)
        self._release()
        if reservation.user_id != user_id:
            raise NotOwner("Not authorized to view this reservation", {"reservationId": reservation_id})
        return reservation

    def list_user_reservations(
        self,
        user_id: str,
        status: Optional[ReservationStatus] = None,
        upcoming: bool = False,
    ) -> list[Reservation]:
        """Newest first"""
        starts_after = self.clock() if upcoming else None
        reservations = self.repo.list_for_user(
            self.db, user_id, status.value if status else None, starts_after, limit=100
        )
        self._release()
        return reservations

    def list_station_reservations(
        self,
        station_id: int,
        status: Optional[ReservationStatus] = None,
        day: Optional[date] = None,
    ) -> list[Reservation]:
        window = None
        if day:
            day_start = datetime.combine(day, time.min)
            window = TimeWindow(day_start, day_start + timedelta(days=1))
        reservations = self.repo.list_for_station(
            self.db, station_id, status.value if status else None, window, limit=200
        )
        self._release()
        return reservations

    # ============================================================================
    # INTERNALS
    # ============================================================================

    def _load(self, reservation_id: int) -> Reservation:
        reservation = self.repo.get_by_id(self.db, reservation_id)
        if not reservation:
            self.db.rollback()
            raise NotFound("Reservation not found", {"reservationId": reservation_id})
        return reservation

    def _require_connector(self, connector_id: int) -> None:
        connector = self.catalog.get_connector(self.db, connector_id)
        self._release()
        if not connector:
            raise ConnectorNotFound("Connector not found", {"connectorId": connector_id})

    def _confirmed_conflicts(self, connector_id: int, window: TimeWindow) -> list[IndexEntry]:
        """
        Cached conflicts, checked against the store

        Other processes (the arq worker, other API workers) write without touching this
        process's index, so a cached answer is only returned when the store agrees.
        A disagreement reloads the connector.
        """
        cached = self.index.conflicts(connector_id, window)
        try:
            stored = [entry_for(r) for r in self.repo.find_overlapping(self.db, connector_id, window)]
            self._release()
        except Exception:
            self.db.rollback()
            raise

        if stored != cached:
            logger.info(f"🔄 Availability index for connector {connector_id} was stale, reloading")
            self.index.rebuild(connector_id)
        return stored

    def _transition(
        self,
        reservation: Reservation,
        trigger: Trigger,
        actual_cost: Optional[float] = None,
        note: Optional[str] = None,
    ) -> Reservation:
        """Plan, compare-and-set, commit, then mirror into the index and the event stream"""
        now = self.clock()
        previous_status = reservation.status
        try:
            plan = plan_transition(reservation, trigger, now, self.policy, actual_cost=actual_cost, note=note)
            if not self.repo.compare_and_set(self.db, reservation.id, plan, now):
                self.db.rollback()
                current = self.repo.get_by_id(self.db, reservation.id)
                raise InvalidTransition(
                    "Reservation was changed by another request",
                    {
                        "reservationId": reservation.id,
                        "currentStatus": current.status if current else None,
                        "trigger": plan.trigger.value,
                    },
                )
            self._commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(reservation)
        self._release()
        logger.info(f"🔄 Reservation {reservation.id}: {previous_status} → {reservation.status} ({trigger.value})")
        self.index.apply(reservation)
        self._publish(reservation, now, previous_status=previous_status)
        return reservation

    def _commit(self) -> None:
        try:
            self.db.commit()
        except (OperationalError, InterfaceError) as e:
            self.db.rollback()
            logger.error(f"❌ Commit failed: {e}")
            raise StoreUnavailable("Reservation store is temporarily unavailable") from e

    def _release(self) -> None:
        """End the read transaction so the store's write lock is not held across listeners"""
        self.db.commit()

    def _publish(
        self, reservation: Reservation, now: datetime, previous_status: Optional[str], kind: str = STATUS_CHANGED
    ) -> None:
        if self.events is None:
            return
        self.events.publish(
            ReservationStatusChanged.from_reservation(reservation, now, previous_status=previous_status, kind=kind)
        )
