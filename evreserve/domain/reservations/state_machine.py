"""
Reservation state machine

The single authority on which status changes are legal. Callers ask for a transition
plan, then persist it with a conditional write that only succeeds if the reservation
is still in ``plan.from_status``.

    pending    -> confirmed | canceled | expired
    confirmed  -> checked_in | canceled
    checked_in -> completed | no_show

completed, canceled, expired and no_show are terminal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ...errors import (
    CancellationWindowClosed,
    CheckInWindowClosed,
    InvalidTransition,
)
from .policy import BookingPolicy


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    NO_SHOW = "no_show"


class Trigger(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_DECLINED = "payment_declined"
    USER_CANCEL = "user_cancel"
    EXPIRE = "expire"
    CHECK_IN = "check_in"
    COMPLETE = "complete"
    MARK_NO_SHOW = "mark_no_show"


# Statuses that hold the connector
ACTIVE_STATUSES = frozenset(
    {ReservationStatus.PENDING, ReservationStatus.CONFIRMED, ReservationStatus.CHECKED_IN}
)
TERMINAL_STATUSES = frozenset(
    {
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELED,
        ReservationStatus.EXPIRED,
        ReservationStatus.NO_SHOW,
    }
)

TRANSITIONS: dict[tuple[ReservationStatus, Trigger], ReservationStatus] = {
    (ReservationStatus.PENDING, Trigger.PAYMENT_SUCCEEDED): ReservationStatus.CONFIRMED,
    (ReservationStatus.PENDING, Trigger.PAYMENT_DECLINED): ReservationStatus.CANCELED,
    (ReservationStatus.PENDING, Trigger.USER_CANCEL): ReservationStatus.CANCELED,
    (ReservationStatus.PENDING, Trigger.EXPIRE): ReservationStatus.EXPIRED,
    (ReservationStatus.CONFIRMED, Trigger.CHECK_IN): ReservationStatus.CHECKED_IN,
    (ReservationStatus.CONFIRMED, Trigger.USER_CANCEL): ReservationStatus.CANCELED,
    (ReservationStatus.CHECKED_IN, Trigger.COMPLETE): ReservationStatus.COMPLETED,
    (ReservationStatus.CHECKED_IN, Trigger.MARK_NO_SHOW): ReservationStatus.NO_SHOW,
}


@dataclass
class TransitionPlan:
    from_status: ReservationStatus
    to_status: ReservationStatus
    trigger: Trigger
    updates: dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None


def is_active(status) -> bool:
    return ReservationStatus(status) in ACTIVE_STATUSES


def is_terminal(status) -> bool:
    return ReservationStatus(status) in TERMINAL_STATUSES


def allowed_triggers(status) -> list[Trigger]:
    current = ReservationStatus(status)
    return [trigger for (source, trigger) in TRANSITIONS if source == current]


def next_status(status, trigger) -> ReservationStatus:
    """Look up the target status or raise InvalidTransition (self-transitions included)"""
    current = ReservationStatus(status)
    trigger = Trigger(trigger)
    target = TRANSITIONS.get((current, trigger))
    if target is None:
        raise InvalidTransition(
            f"Cannot apply {trigger.value} to a {current.value} reservation",
            {
                "currentStatus": current.value,
                "trigger": trigger.value,
                "allowedTriggers": [t.value for t in allowed_triggers(current)],
            },
        )
    return target


def plan_transition(
    reservation,
    trigger,
    now: datetime,
    policy: BookingPolicy,
    actual_cost: Optional[float] = None,
    note: Optional[str] = None,
) -> TransitionPlan:
    """
    Validate ``trigger`` against the reservation's current state and time-based guards

    Returns the field updates that go with the new status. Raises InvalidTransition,
    CancellationWindowClosed or CheckInWindowClosed.
    """
    current = ReservationStatus(reservation.status)
    trigger = Trigger(trigger)
    target = next_status(current, trigger)

    if trigger == Trigger.EXPIRE:
        deadline = reservation.payment_deadline
        if reservation.is_paid or deadline is None or now < deadline:
            raise InvalidTransition(
                "Payment deadline has not passed",
                {
                    "currentStatus": current.value,
                    "paymentDeadline": deadline.isoformat() if deadline else None,
                },
            )

    elif trigger == Trigger.USER_CANCEL and current == ReservationStatus.CONFIRMED:
        if reservation.start_time - now <= policy.cancellation_cutoff:
            cutoff_minutes = int(policy.cancellation_cutoff.total_seconds() // 60)
            raise CancellationWindowClosed(
                f"Cannot cancel reservation less than {cutoff_minutes} minutes before start time",
                {"startTime": reservation.start_time.isoformat()},
            )

    elif trigger == Trigger.CHECK_IN:
        opens_at = reservation.start_time - policy.check_in_early
        if not (opens_at <= now < reservation.end_time):
            raise CheckInWindowClosed(
                "Check-in is only possible during the reservation window",
                {
                    "checkInOpensAt": opens_at.isoformat(),
                    "endTime": reservation.end_time.isoformat(),
                },
            )

    elif trigger == Trigger.COMPLETE:
        if actual_cost is None or actual_cost < 0:
            raise InvalidTransition("A non-negative actual cost is required to complete a session")

    elif trigger == Trigger.MARK_NO_SHOW:
        checked_in_at = reservation.checked_in_at or reservation.start_time
        if reservation.charging_started_at is not None or now < checked_in_at + policy.no_show_grace:
            raise InvalidTransition(
                "Charging started or no-show grace period still running",
                {"currentStatus": current.value},
            )

    updates: dict[str, Any] = {"status": target.value, "updated_at": now}

    if target == ReservationStatus.CONFIRMED:
        updates.update(payment_deadline=None, is_paid=True, paid_at=now, credential_active=True)
    elif target == ReservationStatus.CHECKED_IN:
        updates.update(checked_in_at=now)
    elif target == ReservationStatus.COMPLETED:
        updates.update(actual_cost=actual_cost, completed_at=now)

    if target in TERMINAL_STATUSES:
        # Deadline only lives while pending; credential dies with the reservation
        updates.update(payment_deadline=None, credential_active=False)
    if target == ReservationStatus.CANCELED:
        updates.update(canceled_at=now, cancel_reason=note)

    return TransitionPlan(
        from_status=current, to_status=target, trigger=trigger, updates=updates, note=note
    )
