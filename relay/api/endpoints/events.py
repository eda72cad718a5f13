# relay/api/endpoints/events.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status
from typing import Any, Optional
import logging

from relay.admission import audit
from relay.admission.engine import AdmissionEngine, AdmissionOutcome, Decision, CODE_PAYMENT_BACKEND_UNAVAILABLE
from relay.api.models.event import ChargeInfo, EventListResponse, SubmissionResponse
from relay.dependencies import get_engine, get_event_store, get_ledger
from relay.models.event import BID_KIND, Event
from relay.services.event_store import EventFilter

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 500


def charge_info(charge) -> ChargeInfo:
    return ChargeInfo(**charge.to_dict())


def outcome_status_code(outcome: AdmissionOutcome) -> int:
    if outcome.decision is Decision.ACCEPT:
        return status.HTTP_200_OK
    if outcome.decision is Decision.PENDING:
        return status.HTTP_402_PAYMENT_REQUIRED
    if outcome.code == CODE_PAYMENT_BACKEND_UNAVAILABLE:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


def admit_event(event: Event, engine: AdmissionEngine) -> AdmissionOutcome:
    """
    Run the admission decision and store the event when it is accepted.

    Raises:
        HTTPException: 400 for a mismatched id, 500 if the store rejects the write
    """
    if not event.has_valid_id():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid: event id does not match its content"
        )

    outcome = engine.decide(event)

    if outcome.decision is Decision.ACCEPT:
        try:
            engine.store.save(event)
        except Exception as e:
            logger.error(f"Failed to store accepted event {event.id}: {e}", exc_info=True)
            audit.log_error("store_write", str(e), event_id=event.id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="error: failed to store event"
            )
    return outcome


def submission_response(event: Event, outcome: AdmissionOutcome) -> SubmissionResponse:
    return SubmissionResponse(
        event_id=event.id,
        status=outcome.decision.value,
        message=outcome.message,
        charge=charge_info(outcome.charge) if outcome.charge is not None else None
    )


@router.post(
    "/",
    response_model=SubmissionResponse,
    summary="Submit an Event"
)
def submit_event(
    event: Event,
    response: Response,
    engine: AdmissionEngine = Depends(get_engine)
) -> Any:
    """
    Submit an event for admission to the relay.

    - 200: the event was accepted and stored
    - 402: payment is required; the body carries the charge to pay
    - 400: the event was rejected, `message` says why
    - 503: the payment backend is unavailable, try again later
    """
    outcome = admit_event(event, engine)
    response.status_code = outcome_status_code(outcome)
    logger.info(f"Event {event.id} (kind {event.kind}) {outcome.decision.value} {outcome.message}".rstrip())
    return submission_response(event, outcome)


@router.get(
    "/",
    response_model=EventListResponse,
    summary="List Stored Events"
)
def list_events(
    kind: Optional[int] = Query(None, ge=0, description="Only events of this kind"),
    author: Optional[str] = Query(None, description="Only events by this pubkey"),
    auction: Optional[str] = Query(None, description="Only bids referencing this auction event id"),
    limit: int = Query(100, ge=1, le=MAX_QUERY_LIMIT),
    store=Depends(get_event_store)
) -> Any:
    """Read events that have been admitted to the store, newest first."""
    kinds = [kind] if kind is not None else None
    tags = {}
    if auction:
        tags["e"] = [auction]
        kinds = kinds or [BID_KIND]

    events = store.query(EventFilter(
        kinds=kinds,
        authors=[author] if author else None,
        tags=tags,
        limit=limit
    ))
    return EventListResponse(events=events, total_count=len(events))


@router.get(
    "/{event_id}/payment",
    response_model=ChargeInfo,
    summary="Get Pending Payment for an Event"
)
def get_event_payment(
    event_id: str = Path(..., description="Id of the event awaiting payment", pattern=r"^[0-9a-f]{64}$"),
    ledger=Depends(get_ledger)
) -> Any:
    """Return the pending charge holding an event, for clients polling for payment."""
    charge = ledger.get_by_event(event_id)
    if charge is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending payment for event '{event_id}'."
        )
    return charge_info(charge)
