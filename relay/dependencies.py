# relay/dependencies.py
"""
Process-wide admission components, wired from settings.

Endpoints receive these through FastAPI's Depends so tests can swap them
with app.dependency_overrides.
"""
import logging
import threading
from typing import Optional

from relay.admission.engine import AdmissionConfig, AdmissionEngine
from relay.admission.ledger import create_ledger
from relay.admission.webhook import PaymentWebhookHandler
from relay.core.config import settings
from relay.services.event_store import InMemoryEventStore
from relay.services.zbd_api import ZbdClient

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_ledger = None
_store: Optional[InMemoryEventStore] = None
_gateway: Optional[ZbdClient] = None
_engine: Optional[AdmissionEngine] = None
_webhook_handler: Optional[PaymentWebhookHandler] = None


def get_ledger():
    global _ledger
    if _ledger is None:
        with _lock:
            if _ledger is None:
                _ledger = create_ledger(settings.LEDGER_DATABASE_PATH)
    return _ledger


def get_event_store() -> InMemoryEventStore:
    global _store
    if _store is None:
        with _lock:
            if _store is None:
                _store = InMemoryEventStore()
    return _store


def get_gateway() -> ZbdClient:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                if settings.TICKET_PRICE_SATS > 0 and not settings.ZBD_API_KEY:
                    logger.warning("TICKET_PRICE_SATS is set but ZBD_API_KEY is not; gated events will be rejected")
                _gateway = ZbdClient()
    return _gateway


def get_admission_config() -> AdmissionConfig:
    return AdmissionConfig.from_settings(settings)


def get_engine() -> AdmissionEngine:
    global _engine
    if _engine is None:
        config = get_admission_config()
        gateway, ledger, store = get_gateway(), get_ledger(), get_event_store()
        with _lock:
            if _engine is None:
                _engine = AdmissionEngine(config=config, gateway=gateway, ledger=ledger, store=store)
    return _engine


def get_webhook_handler() -> PaymentWebhookHandler:
    global _webhook_handler
    if _webhook_handler is None:
        gateway, ledger, store = get_gateway(), get_ledger(), get_event_store()
        with _lock:
            if _webhook_handler is None:
                _webhook_handler = PaymentWebhookHandler(
                    ledger=ledger,
                    store=store,
                    gateway=gateway,
                    verify_with_provider=settings.ZBD_VERIFY_CALLBACKS,
                )
    return _webhook_handler


def reset_dependencies() -> None:
    """Drop every cached component (useful for testing)."""
    global _ledger, _store, _gateway, _engine, _webhook_handler
    with _lock:
        _ledger = None
        _store = None
        _gateway = None
        _engine = None
        _webhook_handler = None
