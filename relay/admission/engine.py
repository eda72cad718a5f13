# relay/admission/engine.py
"""
Admission decision engine.

Decides, for every submitted event, whether it is:
- accepted and can be stored right away,
- rejected with a reason for the submitter,
- held pending payment of a charge.

When TICKET_PRICE_SATS > 0 every event is payment-gated regardless of kind.
Otherwise kind-specific validators run and kinds without validators follow
the configured unknown-kind policy.
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Protocol

from relay.admission import audit
from relay.admission.errors import DuplicatePendingCharge
from relay.admission.ledger import ChargeStatus, PendingCharge, PendingPaymentLedger
from relay.admission.validators import ValidatorRegistry, default_registry
from relay.models.event import Event
from relay.services.event_store import EventFilter, EventStore
from relay.services.zbd_api import ZbdCharge

logger = logging.getLogger(__name__)

UNKNOWN_KIND_POLICIES = ("accept", "reject")

# Reject codes, prefixed to messages the way relays report OK=false
CODE_INVALID = "invalid"
CODE_BLOCKED = "blocked"
CODE_PAYMENT_BACKEND_UNAVAILABLE = "payment-backend-unavailable"


class InvoiceGateway(Protocol):
    def create_charge(
        self,
        amount_sats: int,
        description: str,
        internal_id: str,
        callback_url: str,
        expires_in: Optional[int] = None
    ) -> ZbdCharge:
        ...

    def get_charge(self, charge_id: str) -> ZbdCharge:
        ...


@dataclass(frozen=True)
class AdmissionConfig:
    """Immutable admission policy, built once at startup."""
    price_sats: int = 0
    unknown_kind_policy: str = "accept"
    charge_description: str = "JustBazar relay event fee"
    callback_base_url: str = "http://localhost:3334"
    charge_wait_seconds: float = 35.0

    def __post_init__(self):
        if self.price_sats < 0:
            raise ValueError("price_sats must not be negative")
        if self.unknown_kind_policy not in UNKNOWN_KIND_POLICIES:
            raise ValueError(f"unknown_kind_policy must be one of {UNKNOWN_KIND_POLICIES}")

    @property
    def gated(self) -> bool:
        return self.price_sats > 0

    def callback_url(self, event_id: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}/payment-update/{event_id}"

    @classmethod
    def from_settings(cls, settings) -> "AdmissionConfig":
        return cls(
            price_sats=settings.TICKET_PRICE_SATS,
            unknown_kind_policy=settings.UNKNOWN_KIND_POLICY,
            charge_description=f"{settings.PROJECT_NAME} event fee",
            callback_base_url=str(settings.RELAY_URL),
            charge_wait_seconds=settings.CHARGE_WAIT_SECONDS,
        )


class Decision(str, Enum):
    ACCEPT = "accepted"
    REJECT = "rejected"
    PENDING = "pending"


@dataclass(frozen=True)
class AdmissionOutcome:
    decision: Decision
    reason: Optional[str] = None
    code: Optional[str] = None
    charge: Optional[PendingCharge] = None

    @classmethod
    def accept(cls, reason: Optional[str] = None) -> "AdmissionOutcome":
        return cls(decision=Decision.ACCEPT, reason=reason)

    @classmethod
    def reject(cls, reason: str, code: str = CODE_INVALID) -> "AdmissionOutcome":
        return cls(decision=Decision.REJECT, reason=reason, code=code)

    @classmethod
    def pending(cls, charge: PendingCharge) -> "AdmissionOutcome":
        return cls(decision=Decision.PENDING, reason="payment required", charge=charge)

    @property
    def message(self) -> str:
        """Relay-style status message, e.g. 'invalid: bid-too-low'."""
        if self.decision is Decision.REJECT:
            return f"{self.code}: {self.reason}"
        return self.reason or ""


def _backend_unavailable() -> AdmissionOutcome:
    return AdmissionOutcome.reject(
        "payment backend unavailable",
        code=CODE_PAYMENT_BACKEND_UNAVAILABLE
    )


class AdmissionEngine:
    """
    Orchestrates validation, invoicing and the pending-payment ledger.

    The engine never stores events itself: ACCEPT tells the caller to save the
    event now; PENDING means the webhook handler will save it once paid.
    """

    def __init__(
        self,
        config: AdmissionConfig,
        gateway: InvoiceGateway,
        ledger: PendingPaymentLedger,
        store: EventStore,
        validators: Optional[ValidatorRegistry] = None
    ):
        self.config = config
        self.gateway = gateway
        self.ledger = ledger
        self.store = store
        self.validators = validators if validators is not None else default_registry()

    def decide(self, event: Event) -> AdmissionOutcome:
        audit.log_event_received(event.id, event.kind, event.pubkey, self.config.gated)

        if self.config.gated:
            outcome = self._decide_gated(event)
        else:
            outcome = self._decide_ungated(event)

        if outcome.decision is Decision.ACCEPT:
            audit.log_event_accepted(event.id, event.kind)
        elif outcome.decision is Decision.REJECT:
            audit.log_event_rejected(event.id, outcome.reason, outcome.code)
        return outcome

    def _decide_ungated(self, event: Event) -> AdmissionOutcome:
        if self.validators.handles(event.kind):
            result = self.validators.validate(event, self.store)
            if not result.accepted:
                return AdmissionOutcome.reject(result.reason)
            return AdmissionOutcome.accept()

        if self.config.unknown_kind_policy == "reject":
            logger.info(f"Rejecting event {event.id}: kind {event.kind} has no validator")
            return AdmissionOutcome.reject(
                f"event kind {event.kind} is not accepted by this relay",
                code=CODE_BLOCKED
            )
        return AdmissionOutcome.accept()

    def _decide_gated(self, event: Event) -> AdmissionOutcome:
        if self.store.query(EventFilter(ids=[event.id], limit=1)):
            return AdmissionOutcome.accept("duplicate: already have this event")

        reservation, created = self.ledger.reserve(event, self.config.price_sats)
        if not created:
            return self._existing_charge(event, reservation)

        # The reservation keeps other submitters out; no ledger lock is held
        # while the provider is called.
        try:
            provider_charge = self.gateway.create_charge(
                amount_sats=self.config.price_sats,
                description=self.config.charge_description,
                internal_id=event.id,
                callback_url=self.config.callback_url(event.id),
            )
        except Exception as e:
            self.ledger.release(event.id)
            logger.error(f"Payment backend failed for event {event.id}: {e}")
            audit.log_gateway_failed(event.id, "create_charge", str(e))
            return _backend_unavailable()

        try:
            charge = self.ledger.put(
                replace(reservation, charge_id=provider_charge.charge_id, invoice=provider_charge.invoice)
            )
        except DuplicatePendingCharge as e:
            logger.warning(f"{e}; provider charge {provider_charge.charge_id} is orphaned")
            existing = self.ledger.get_by_event(event.id)
            if existing is None:
                return _backend_unavailable()
            return AdmissionOutcome.pending(existing)

        audit.log_charge_created(event.id, charge.charge_id, charge.amount_sats)
        return AdmissionOutcome.pending(charge)

    def _existing_charge(self, event: Event, current: PendingCharge) -> AdmissionOutcome:
        if current.is_reservation:
            # Another request is creating the charge right now
            current = self.ledger.wait_for_charge(event.id, self.config.charge_wait_seconds)
            if current is None:
                logger.warning(f"Concurrent charge creation for event {event.id} did not complete")
                return _backend_unavailable()

        if current.status is ChargeStatus.PAID:
            logger.info(f"Event {event.id} already paid on charge {current.charge_id}, not charging again")
            return AdmissionOutcome.accept("duplicate: event already paid for")

        logger.info(f"Event {event.id} already pending payment on charge {current.charge_id}")
        audit.log_charge_reused(event.id, current.charge_id)
        return AdmissionOutcome.pending(current)
