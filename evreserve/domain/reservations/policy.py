"""Tunable booking rules"""

from dataclasses import dataclass
from datetime import timedelta

from ... import config


@dataclass(frozen=True)
class BookingPolicy:
    payment_grace: timedelta = timedelta(minutes=15)
    min_duration: timedelta = timedelta(minutes=30)
    max_duration: timedelta = timedelta(minutes=480)
    cancellation_cutoff: timedelta = timedelta(minutes=60)
    check_in_early: timedelta = timedelta(minutes=15)
    no_show_grace: timedelta = timedelta(minutes=15)
    reminder_lead: timedelta = timedelta(minutes=5)
    currency: str = "BDT"

    @classmethod
    def from_config(cls) -> "BookingPolicy":
        return cls(
            payment_grace=timedelta(minutes=config.PAYMENT_GRACE_MINUTES),
            min_duration=timedelta(minutes=config.MIN_RESERVATION_MINUTES),
            max_duration=timedelta(minutes=config.MAX_RESERVATION_MINUTES),
            cancellation_cutoff=timedelta(minutes=config.CANCELLATION_CUTOFF_MINUTES),
            check_in_early=timedelta(minutes=config.CHECK_IN_EARLY_MINUTES),
            no_show_grace=timedelta(minutes=config.NO_SHOW_GRACE_MINUTES),
            reminder_lead=timedelta(minutes=config.PAYMENT_REMINDER_LEAD_MINUTES),
            currency=config.DEFAULT_CURRENCY,
        )
