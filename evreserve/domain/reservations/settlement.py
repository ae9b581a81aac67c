"""
Settlement gateway adapter
Receives payment outcomes from the gateway and hands them to the booking service.

The gateway delivers at least once and retries on any non-2xx answer, so:
- duplicates and callbacks that lost a race are answered 200 (nothing left to retry)
- transient store failures are retried here, then answered 503 so the gateway redelivers
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ... import config
from ...errors import InvalidTransition
from ...utils.retry import retry_with_backoff
from ...webhook_security import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookSignatureError,
    verify_settlement_signature,
)
from .router import get_booking_service
from .schemas import SettlementCallback, SettlementResult
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/settlement", response_model=SettlementResult)
async def settlement_webhook(
    request: Request,
    service: BookingService = Depends(get_booking_service),
):
    secret = request.app.state.settlement_secret
    if not secret:
        logger.error("❌ SETTLEMENT_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    body = await request.body()
    try:
        verify_settlement_signature(
            body,
            request.headers.get(SIGNATURE_HEADER),
            request.headers.get(TIMESTAMP_HEADER),
            secret,
        )
    except WebhookSignatureError as e:
        logger.warning(f"🚫 Settlement webhook rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature") from e

    try:
        callback = SettlementCallback.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"🚫 Malformed settlement payload: {e.error_count()} errors")
        raise HTTPException(status_code=400, detail="Malformed settlement payload") from e

    logger.info(
        f"📨 Settlement callback {callback.gatewayRef}: {callback.outcome} for reservation {callback.reservationId}"
    )

    def apply_outcome():
        return retry_with_backoff(
            lambda: service.on_payment_outcome(
                callback.reservationId, callback.outcome, callback.amount, callback.gatewayRef
            ),
            max_retries=config.SETTLEMENT_MAX_RETRIES,
            retry_delay=0.2,
            description=f"settlement {callback.gatewayRef}",
        )

    try:
        status, reservation = await run_in_threadpool(apply_outcome)
    except InvalidTransition as e:
        return SettlementResult(
            status="rejected",
            reservationId=callback.reservationId,
            reservationStatus=e.details.get("currentStatus"),
        )

    return SettlementResult(
        status=status,
        reservationId=reservation.id,
        reservationStatus=reservation.status,
    )
