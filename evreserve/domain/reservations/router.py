"""Reservation router - FastAPI endpoints for booking and lifecycle operations"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from ... import config
from ...auth import get_current_user_id
from ...database import get_db
from ...jobs import enqueue_reservation_jobs
from .schemas import (
    AvailabilityResponse,
    AvailableSlotsResponse,
    CancelRequest,
    CheckInRequest,
    CompleteSessionRequest,
    ConflictWindow,
    ReservationCreate,
    ReservationCreatedResponse,
    ReservationDetailResponse,
    ReservationResponse,
    SlotResponse,
)
from .service import BookingService
from .state_machine import ReservationStatus
from .time_window import TimeWindow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reservations", tags=["Reservations"])


def get_booking_service(request: Request, db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    state = request.app.state
    return BookingService(
        db,
        state.availability_index,
        state.event_bus,
        policy=state.booking_policy,
        clock=state.clock,
    )


# ============================================================================
# BOOKING
# ============================================================================


@router.post("", response_model=ReservationCreatedResponse, status_code=201)
def create_reservation(
    data: ReservationCreate,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    """Hold a connector for a time window; the hold expires unless paid in time"""
    window = TimeWindow(data.startTime, data.endTime)
    reservation, payload = service.create_reservation(
        user_id, data.vehicleId, data.stationId, data.connectorId, window
    )

    if config.DEFERRED_JOBS_ENABLED:
        background_tasks.add_task(
            enqueue_reservation_jobs,
            reservation.id,
            reservation.payment_deadline,
            service.policy.reminder_lead,
            service.clock(),
        )

    return ReservationCreatedResponse(
        reservation=ReservationResponse.from_reservation(reservation),
        verificationCode=reservation.verification_code,
        checkInPayload=payload,
    )


@router.get("", response_model=list[ReservationResponse])
def list_my_reservations(
    status: Optional[ReservationStatus] = Query(None, description="Filter by status"),
    upcoming: bool = Query(False, description="Only reservations that have not started yet"),
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    reservations = service.list_user_reservations(user_id, status, upcoming)
    return [ReservationResponse.from_reservation(r) for r in reservations]


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/availability", response_model=AvailabilityResponse)
def check_availability(
    connectorId: int,
    startTime: datetime,
    endTime: datetime,
    service: BookingService = Depends(get_booking_service),
):
    window = TimeWindow(startTime, endTime)
    conflicts = service.list_conflicts(connectorId, window)
    return AvailabilityResponse(
        connectorId=connectorId,
        startTime=window.start,
        endTime=window.end,
        available=not conflicts,
        conflicts=[
            ConflictWindow(
                reservationId=entry.reservation_id,
                startTime=entry.start,
                endTime=entry.end,
                status=entry.status,
            )
            for entry in conflicts
        ],
    )


@router.get("/slots", response_model=AvailableSlotsResponse)
def get_available_slots(
    connectorId: int,
    day: date = Query(..., alias="date"),
    service: BookingService = Depends(get_booking_service),
):
    """30-minute slots between 06:00 and 22:00 (UTC)"""
    slots = service.get_available_slots(connectorId, day)
    return AvailableSlotsResponse(
        connectorId=connectorId,
        date=day,
        slots=[SlotResponse(**slot) for slot in slots],
    )


@router.get("/station/{station_id}", response_model=list[ReservationResponse])
def list_station_reservations(
    station_id: int,
    status: Optional[ReservationStatus] = Query(None),
    day: Optional[date] = Query(None, alias="date"),
    _user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    """Operator view of a station's reservations"""
    reservations = service.list_station_reservations(station_id, status, day)
    return [ReservationResponse.from_reservation(r) for r in reservations]


# ============================================================================
# LIFECYCLE
# ============================================================================


@router.post("/check-in", response_model=ReservationResponse)
def check_in(
    data: CheckInRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Called by the station when the driver presents the code or QR payload"""
    reservation = service.check_in(data.credential)
    return ReservationResponse.from_reservation(reservation)


@router.get("/{reservation_id}", response_model=ReservationDetailResponse)
def get_reservation(
    reservation_id: int,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    reservation = service.get_reservation(reservation_id, user_id)
    return ReservationDetailResponse.from_reservation(reservation)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
def cancel_reservation(
    reservation_id: int,
    data: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    reservation = service.cancel_reservation(reservation_id, user_id, data.reason if data else None)
    return ReservationResponse.from_reservation(reservation)


@router.post("/{reservation_id}/charging-started", response_model=ReservationResponse)
def charging_started(
    reservation_id: int,
    service: BookingService = Depends(get_booking_service),
):
    """Called by the station once energy starts flowing"""
    reservation = service.record_charging_started(reservation_id)
    return ReservationResponse.from_reservation(reservation)


@router.post("/{reservation_id}/complete", response_model=ReservationResponse)
def complete_session(
    reservation_id: int,
    data: CompleteSessionRequest,
    service: BookingService = Depends(get_booking_service),
):
    reservation = service.complete_session(reservation_id, data.actualCost)
    return ReservationResponse.from_reservation(reservation)
