# relay/api/models/event.py
from pydantic import BaseModel, Field
from typing import List, Optional

from relay.models.event import Event


class ChargeInfo(BaseModel):
    """Payment details for an event held until its charge is paid."""
    charge_id: str = Field(..., description="Provider-assigned charge identifier")
    event_id: str = Field(..., description="Event held by this charge")
    amount_sats: int = Field(..., description="Price of the event in sats")
    invoice: Optional[str] = Field(None, description="BOLT11 payment request to pay")
    status: str = Field(..., description="pending, paid, expired or failed")
    created_at: float = Field(..., description="Unix time the charge was created")


class SubmissionResponse(BaseModel):
    """Result of submitting an event to the relay."""
    event_id: str
    status: str = Field(..., description="accepted, pending or rejected", example="pending")
    message: str = Field(default="", description="Relay status message, e.g. 'invalid: bid-too-low'")
    charge: Optional[ChargeInfo] = None


class EventListResponse(BaseModel):
    events: List[Event]
    total_count: int
