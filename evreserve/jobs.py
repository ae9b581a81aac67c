"""
Deferred per-reservation jobs
Queues the expiry and the payment reminder of a new hold on the arq worker so they
fire on time. The periodic sweep is the safety net when Redis is unavailable.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from arq import create_pool
from redis.exceptions import RedisError

from .worker import get_redis_settings

logger = logging.getLogger(__name__)

POOL_TIMEOUT_SECONDS = 10.0


def _as_utc(value: datetime) -> datetime:
    # arq reads naive datetimes as local time
    return value.replace(tzinfo=timezone.utc)


def expiry_job_id(reservation_id: int) -> str:
    return f"reservation:{reservation_id}:expire"


def reminder_job_id(reservation_id: int) -> str:
    return f"reservation:{reservation_id}:remind"


async def enqueue_reservation_jobs(
    reservation_id: int, payment_deadline: datetime, reminder_lead: timedelta, now: datetime
) -> bool:
    """
    Queue expire_reservation_task at the deadline and payment_reminder_task ahead of it

    Returns False (and logs) when the queue cannot be reached.
    """
    try:
        pool = await asyncio.wait_for(create_pool(get_redis_settings()), timeout=POOL_TIMEOUT_SECONDS)
    except (asyncio.TimeoutError, OSError, RedisError) as e:
        logger.warning(f"⚠️ Job queue unavailable, reservation {reservation_id} left to the sweep: {e}")
        return False

    try:
        await pool.enqueue_job(
            "expire_reservation_task",
            reservation_id,
            _job_id=expiry_job_id(reservation_id),
            _defer_until=_as_utc(payment_deadline),
        )
        remind_at = payment_deadline - reminder_lead
        if remind_at > now:
            await pool.enqueue_job(
                "payment_reminder_task",
                reservation_id,
                _job_id=reminder_job_id(reservation_id),
                _defer_until=_as_utc(remind_at),
            )
        logger.info(f"📋 Deferred jobs queued for reservation {reservation_id}")
        return True
    except (OSError, RedisError) as e:
        logger.warning(f"⚠️ Could not queue jobs for reservation {reservation_id}: {e}")
        return False
    finally:
        try:
            await pool.close()
        except (OSError, RedisError) as e:
            logger.debug(f"Pool close failed (non-critical): {e}")
