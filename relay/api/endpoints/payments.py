# relay/api/endpoints/payments.py
from fastapi import APIRouter, Body, Depends, HTTPException, Path, status
from typing import Any, Optional
import logging

from relay.admission.engine import AdmissionEngine, Decision
from relay.admission.errors import PaymentBackendUnavailable, StoreWriteFailure
from relay.admission.webhook import PaymentWebhookHandler
from relay.api.endpoints.events import admit_event, outcome_status_code, submission_response
from relay.api.models.event import SubmissionResponse
from relay.api.models.payment import PaymentCallback, WebhookResponse
from relay.dependencies import get_engine, get_webhook_handler
from relay.models.event import Event

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/pay-for-event",
    response_model=SubmissionResponse,
    summary="Request an Invoice for an Event"
)
def pay_for_event(
    event: Event,
    engine: AdmissionEngine = Depends(get_engine)
) -> Any:
    """
    Get the Lightning invoice that admits an event once paid.

    Resubmitting an event that is already waiting for payment returns the
    same invoice. Returns 409 when the relay does not charge for events.
    """
    if not engine.config.gated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This relay does not charge for events; submit it directly."
        )

    outcome = admit_event(event, engine)
    if outcome.decision is Decision.REJECT:
        raise HTTPException(status_code=outcome_status_code(outcome), detail=outcome.message)
    return submission_response(event, outcome)


@router.post(
    "/payment-update/{reference}",
    response_model=WebhookResponse,
    summary="Payment Provider Callback"
)
def payment_update(
    reference: str = Path(..., description="Event id (or charge id) the callback refers to"),
    callback: Optional[PaymentCallback] = Body(None),
    handler: PaymentWebhookHandler = Depends(get_webhook_handler)
) -> Any:
    """
    Receive a charge status update from the payment provider.

    Unknown or already settled references answer 200 so the provider stops
    retrying. A 502 asks the provider to retry later.
    """
    payload = callback.model_dump() if callback is not None else {}

    try:
        result = handler.handle(reference, payload)
    except PaymentBackendUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )
    except StoreWriteFailure as e:
        logger.error(f"Manual reconciliation required: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment recorded but the event could not be stored; reconciliation required."
        )

    return WebhookResponse(reference=reference, result=result.value)
