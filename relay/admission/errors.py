# relay/admission/errors.py
"""Failure taxonomy for payment-gated admission."""
from typing import Optional


class AdmissionError(Exception):
    """Base class for admission workflow errors."""


class ValidationFailure(AdmissionError):
    """The event payload is structurally invalid. Never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PaymentBackendUnavailable(AdmissionError):
    """The payment provider could not be reached or gave an unusable answer."""


class DuplicatePendingCharge(AdmissionError):
    """
    An active charge already exists for the event.

    Internal only: the engine answers with the existing charge instead.
    """

    def __init__(self, event_id: str, charge_id: Optional[str]):
        super().__init__(f"Event {event_id} already has pending charge {charge_id}")
        self.event_id = event_id
        self.charge_id = charge_id


class UnknownOrResolvedCharge(AdmissionError):
    """A webhook referenced a charge that is unknown or already terminal."""

    def __init__(self, reference: str):
        super().__init__(f"No pending charge for reference {reference}")
        self.reference = reference


class StoreWriteFailure(AdmissionError):
    """The event was paid for but could not be saved. Needs reconciliation."""

    def __init__(self, event_id: str, charge_id: str, cause: Optional[Exception] = None):
        super().__init__(f"Paid event {event_id} (charge {charge_id}) could not be stored: {cause}")
        self.event_id = event_id
        self.charge_id = charge_id
        self.cause = cause
