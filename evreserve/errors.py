"""
Reservation error taxonomy

Every failure the booking engine reports to a caller is one of these. Each carries a
stable machine-readable code so clients can tell a taken slot from a bad window and
offer the next best option, plus the HTTP status the API layer answers with.
"""

from typing import Any, Optional


class ReservationError(Exception):
    """Base class for all booking engine errors"""

    code = "RESERVATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


# Validation - surfaced immediately, never retried


class WindowInvalid(ReservationError):
    code = "WINDOW_INVALID"
    status_code = 422


class VehicleIncompatible(ReservationError):
    code = "VEHICLE_INCOMPATIBLE"
    status_code = 422


# Lookups


class NotFound(ReservationError):
    code = "NOT_FOUND"
    status_code = 404


class ConnectorNotFound(NotFound):
    code = "CONNECTOR_NOT_FOUND"


class NotOwner(ReservationError):
    code = "NOT_OWNER"
    status_code = 403


# Conflicts - definitive, callers must re-query state instead of retrying


class SlotUnavailable(ReservationError):
    code = "SLOT_UNAVAILABLE"
    status_code = 409


class InvalidTransition(ReservationError):
    code = "INVALID_TRANSITION"
    status_code = 409


class CancellationWindowClosed(ReservationError):
    code = "CANCELLATION_WINDOW_CLOSED"
    status_code = 409


class CheckInWindowClosed(ReservationError):
    code = "CHECK_IN_WINDOW_CLOSED"
    status_code = 409


# Infrastructure - transient, retried with backoff by background workers


class StoreUnavailable(ReservationError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
