# relay/admission/webhook.py
"""
Payment webhook handling.

The provider delivers status callbacks at least once, possibly concurrently
and for charges we have already settled. Every callback is resolved against
the ledger; only the first terminal resolution of a charge has an effect.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

from relay.admission import audit
from relay.admission.engine import InvoiceGateway
from relay.admission.errors import (
    PaymentBackendUnavailable,
    StoreWriteFailure,
    UnknownOrResolvedCharge,
)
from relay.admission.ledger import ChargeStatus, PendingCharge, PendingPaymentLedger
from relay.services.event_store import EventStore

logger = logging.getLogger(__name__)

# Provider status strings mapped onto terminal charge states
PROVIDER_STATUS_MAP = {
    "completed": ChargeStatus.PAID,
    "paid": ChargeStatus.PAID,
    "settled": ChargeStatus.PAID,
    "success": ChargeStatus.PAID,
    "expired": ChargeStatus.EXPIRED,
    "error": ChargeStatus.FAILED,
    "failed": ChargeStatus.FAILED,
    "canceled": ChargeStatus.FAILED,
    "cancelled": ChargeStatus.FAILED,
}


class WebhookResult(str, Enum):
    PUBLISHED = "published"
    DISCARDED = "discarded"
    STILL_PENDING = "pending"
    IGNORED = "ignored"


def map_provider_status(provider_status: Optional[str]) -> Optional[ChargeStatus]:
    """Terminal ChargeStatus for a provider status, None while still open."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


class PaymentWebhookHandler:
    """Resolves provider callbacks and releases paid events to the store."""

    def __init__(
        self,
        ledger: PendingPaymentLedger,
        store: EventStore,
        gateway: Optional[InvoiceGateway] = None,
        verify_with_provider: bool = True
    ):
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.verify_with_provider = verify_with_provider and gateway is not None

    def _locate(self, reference: str, payload_charge_id: Optional[str]) -> PendingCharge:
        # Callback URLs carry the event id; charge ids are accepted as well
        charge = self.ledger.get(reference) or self.ledger.get_by_event(reference)
        if charge is None:
            raise UnknownOrResolvedCharge(reference)
        if payload_charge_id and payload_charge_id != charge.charge_id:
            logger.warning(
                f"Webhook for {reference} names charge {payload_charge_id}, "
                f"but the pending charge is {charge.charge_id}"
            )
            raise UnknownOrResolvedCharge(payload_charge_id)
        return charge

    def _confirmed_status(self, charge: PendingCharge, reported: Optional[str]) -> Optional[str]:
        if not self.verify_with_provider:
            return reported
        try:
            return self.gateway.get_charge(charge.charge_id).status
        except Exception as e:
            logger.error(f"Could not confirm charge {charge.charge_id} with provider: {e}")
            audit.log_gateway_failed(charge.event_id, "get_charge", str(e))
            raise PaymentBackendUnavailable(f"Could not confirm charge {charge.charge_id}") from e

    def handle(self, reference: str, payload: Optional[Dict[str, Any]] = None) -> WebhookResult:
        """
        Process one provider callback.

        Args:
            reference: Path reference from the callback URL (event or charge id)
            payload: Callback body; `status` and optionally `id` are read

        Returns:
            What happened to the held event

        Raises:
            PaymentBackendUnavailable: Status confirmation with the provider failed
            StoreWriteFailure: The event was paid for but could not be stored
        """
        payload = payload or {}
        reported_status = payload.get("status")
        audit.log_webhook_received(reference, reported_status)

        try:
            charge = self._locate(reference, payload.get("id"))
        except UnknownOrResolvedCharge as e:
            logger.info(f"Ignoring webhook: {e}")
            return WebhookResult.IGNORED

        status = map_provider_status(self._confirmed_status(charge, reported_status))
        if status is None:
            logger.info(f"Charge {charge.charge_id} still open (reported '{reported_status}')")
            return WebhookResult.STILL_PENDING

        event, resolved = self.ledger.resolve(charge.charge_id, status)
        if not resolved:
            logger.info(f"Charge {charge.charge_id} was already resolved, ignoring duplicate webhook")
            return WebhookResult.IGNORED

        audit.log_charge_resolved(charge.event_id, charge.charge_id, status.value)

        if event is None:
            logger.info(f"Discarding event {charge.event_id}: charge {charge.charge_id} {status.value}")
            return WebhookResult.DISCARDED

        try:
            self.store.save(event)
        except Exception as e:
            logger.error(
                f"Event {event.id} was paid (charge {charge.charge_id}) but could not be stored: {e}",
                exc_info=True
            )
            audit.log_store_write_failed(event.id, charge.charge_id, str(e), event.to_json())
            # The paid claim stays in the ledger so resubmissions are not invoiced again
            raise StoreWriteFailure(event.id, charge.charge_id, e) from e

        self.ledger.finish_publishing(event.id)
        audit.log_event_published(event.id, charge.charge_id)
        logger.info(f"Published paid event {event.id} (charge {charge.charge_id})")
        return WebhookResult.PUBLISHED
