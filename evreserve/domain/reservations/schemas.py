"""Reservation domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ReservationCreate(BaseModel):
    """Schema for booking a connector"""

    vehicleId: int
    stationId: int
    connectorId: int
    startTime: datetime
    endTime: datetime


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CheckInRequest(BaseModel):
    """Verification code typed at the station, or the scanned payload"""

    credential: str = Field(..., min_length=4, max_length=512)

    @field_validator("credential")
    @classmethod
    def strip_credential(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Credential must not be blank")
        return v


class CompleteSessionRequest(BaseModel):
    actualCost: float = Field(..., ge=0)


class TransitionLogEntry(BaseModel):
    fromStatus: Optional[str]
    toStatus: str
    trigger: str
    note: Optional[str] = None
    createdAt: datetime


class ReservationResponse(BaseModel):
    """Schema for reservation response"""

    id: int
    userId: str
    vehicleId: int
    stationId: int
    connectorId: int
    startTime: datetime
    endTime: datetime
    status: str
    paymentDeadline: Optional[datetime] = None
    isPaid: bool
    paidAt: Optional[datetime] = None
    estimatedCost: Optional[float] = None
    actualCost: Optional[float] = None
    currency: str
    credentialActive: bool
    checkedInAt: Optional[datetime] = None
    chargingStartedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    canceledAt: Optional[datetime] = None
    cancelReason: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_reservation(cls, reservation) -> "ReservationResponse":
        return cls(
            id=reservation.id,
            userId=reservation.user_id,
            vehicleId=reservation.vehicle_id,
            stationId=reservation.station_id,
            connectorId=reservation.connector_id,
            startTime=reservation.start_time,
            endTime=reservation.end_time,
            status=reservation.status,
            paymentDeadline=reservation.payment_deadline,
            isPaid=bool(reservation.is_paid),
            paidAt=reservation.paid_at,
            estimatedCost=reservation.estimated_cost,
            actualCost=reservation.actual_cost,
            currency=reservation.currency,
            credentialActive=bool(reservation.credential_active),
            checkedInAt=reservation.checked_in_at,
            chargingStartedAt=reservation.charging_started_at,
            completedAt=reservation.completed_at,
            canceledAt=reservation.canceled_at,
            cancelReason=reservation.cancel_reason,
            createdAt=reservation.created_at,
            updatedAt=reservation.updated_at,
        )


class ReservationDetailResponse(ReservationResponse):
    """Owner view; the check-in code is only shown while it can be used"""

    verificationCode: Optional[str] = None
    history: list[TransitionLogEntry] = []

    @classmethod
    def from_reservation(cls, reservation) -> "ReservationDetailResponse":
        base = ReservationResponse.from_reservation(reservation).model_dump()
        history = [
            TransitionLogEntry(
                fromStatus=t.from_status,
                toStatus=t.to_status,
                trigger=t.trigger,
                note=t.note,
                createdAt=t.created_at,
            )
            for t in reservation.transitions
        ]
        code = reservation.verification_code if reservation.status == "confirmed" else None
        return cls(**base, verificationCode=code, history=history)


class ReservationCreatedResponse(BaseModel):
    reservation: ReservationResponse
    verificationCode: str  # typed at the station once paid
    checkInPayload: str  # signed, render as QR code


class ConflictWindow(BaseModel):
    reservationId: int
    startTime: datetime
    endTime: datetime
    status: str


class AvailabilityResponse(BaseModel):
    connectorId: int
    startTime: datetime
    endTime: datetime
    available: bool
    conflicts: list[ConflictWindow] = []


class SlotResponse(BaseModel):
    startTime: datetime
    endTime: datetime
    available: bool


class AvailableSlotsResponse(BaseModel):
    connectorId: int
    date: date
    slots: list[SlotResponse]


class SettlementCallback(BaseModel):
    """Payment outcome reported by the settlement gateway"""

    reservationId: int
    outcome: Literal["SUCCEEDED", "FAILED", "CANCELED"]
    gatewayRef: str = Field(..., min_length=1, max_length=255)
    amount: Optional[float] = None

    @field_validator("outcome", mode="before")
    @classmethod
    def normalize_outcome(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class SettlementResult(BaseModel):
    status: Literal["applied", "duplicate", "rejected"]
    reservationId: int
    reservationStatus: Optional[str] = None
