from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Connector(Base):
    """Catalog entry owned by station management - read-only to the booking engine"""

    __tablename__ = "connectors"

    id = Column(Integer, primary_key=True, index=True)
    station_id = Column(Integer, nullable=False, index=True)
    type = Column(String(10), nullable=False)  # AC, DC
    standard = Column(String(20), nullable=False)  # Type2, CCS2, CHAdeMO
    max_kw = Column(Float, nullable=False)
    price_per_kwh = Column(Float, nullable=False, default=0)
    price_per_minute = Column(Float, nullable=False, default=0)
    session_fee = Column(Float, nullable=False, default=0)
    status = Column(String(20), default="available", nullable=False)  # available, offline, maintenance
    created_at = Column(DateTime, server_default=func.now())


class Vehicle(Base):
    """Catalog entry owned by the vehicle registry - read-only to the booking engine"""

    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    make = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    supported_standards = Column(JSON, default=list, nullable=False)  # e.g. ["Type2", "CCS2"]
    usable_kwh = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_reservations_window"),
        # Deadline lives exactly as long as the hold is unpaid
        CheckConstraint(
            "(status = 'pending' AND payment_deadline IS NOT NULL)"
            " OR (status <> 'pending' AND payment_deadline IS NULL)",
            name="ck_reservations_deadline",
        ),
        # Conflict detection: connector + window ordered by start
        Index("ix_reservations_connector_window", "connector_id", "start_time", "end_time", "status"),
        Index("ix_reservations_status_deadline", "status", "payment_deadline"),
        Index("ix_reservations_user_status", "user_id", "status"),
        Index("ix_reservations_station_start", "station_id", "start_time"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Lookup-only references (owned elsewhere)
    user_id = Column(String(64), nullable=False)
    vehicle_id = Column(Integer, nullable=False)
    station_id = Column(Integer, nullable=False)
    connector_id = Column(Integer, nullable=False)

    # Requested window, stored as naive UTC
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    # Status workflow: pending → confirmed → checked_in → completed
    # pending may also end as canceled/expired, confirmed as canceled, checked_in as no_show
    status = Column(String(20), default="pending", nullable=False, index=True)

    # Payment
    payment_deadline = Column(DateTime, nullable=True)  # set only while pending
    is_paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    estimated_cost = Column(Float, nullable=True)
    actual_cost = Column(Float, nullable=True)  # set on completion
    currency = Column(String(10), default="BDT", nullable=False)

    # Check-in credential - generated at creation, usable only while confirmed
    verification_code = Column(String(32), unique=True, nullable=True, index=True)
    credential_active = Column(Boolean, default=False, nullable=False)

    # Lifecycle audit
    checked_in_at = Column(DateTime, nullable=True)
    charging_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)

    # Bumped by every conditional write
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    transitions = relationship(
        "ReservationTransition",
        back_populates="reservation",
        order_by="ReservationTransition.id",
        lazy="selectin",
    )


class ReservationTransition(Base):
    """Append-only status history - rows are never updated or deleted"""

    __tablename__ = "reservation_transitions"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)  # null for the creation entry
    to_status = Column(String(20), nullable=False)
    trigger = Column(String(30), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)

    reservation = relationship("Reservation", back_populates="transitions")


class SettlementEvent(Base):
    """
    One row per distinct gateway callback. The unique key is the dedup token that
    makes redelivered callbacks no-ops.
    """

    __tablename__ = "settlement_events"
    __table_args__ = (
        UniqueConstraint(
            "reservation_id", "outcome", "gateway_ref", name="uq_settlement_events_dedup"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    outcome = Column(String(20), nullable=False)  # SUCCEEDED, FAILED, CANCELED
    gateway_ref = Column(String(255), nullable=False)
    amount = Column(Float, nullable=True)
    applied = Column(Boolean, default=False, nullable=False)  # False when the transition lost a race
    received_at = Column(DateTime, nullable=False)


class ConnectorBookingGuard(Base):
    """
    Per-connector lock row. Booking transactions bump ``version`` before checking for
    overlaps, so two bookings on the same connector cannot interleave.
    """

    __tablename__ = "connector_booking_guards"

    connector_id = Column(Integer, primary_key=True)
    version = Column(Integer, default=0, nullable=False)
