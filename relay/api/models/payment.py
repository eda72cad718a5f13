# relay/api/models/payment.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class PaymentCallback(BaseModel):
    """
    Charge status callback posted by the payment provider.

    Only the fields the relay acts on are declared; everything else the
    provider sends is kept but ignored.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(None, description="Provider charge id")
    status: Optional[str] = Field(None, description="Provider charge status", example="completed")
    internalId: Optional[str] = Field(None, description="Event id given when the charge was created")


class WebhookResponse(BaseModel):
    reference: str
    result: str = Field(..., description="published, discarded, pending or ignored")
