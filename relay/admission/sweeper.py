# relay/admission/sweeper.py
"""
Expiry sweep for charges that never receive a webhook.

Pending charges older than the TTL are resolved as expired and their held
events discarded. Reservations left behind by a request that died while
talking to the provider are released.
"""
import logging
import threading
import time
from typing import Optional

from relay.admission import audit
from relay.admission.ledger import ChargeStatus, PendingPaymentLedger

logger = logging.getLogger(__name__)


class ChargeSweeper:
    def __init__(
        self,
        ledger: PendingPaymentLedger,
        ttl_seconds: int,
        interval_seconds: int = 60
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: Optional[float] = None) -> int:
        """Expire stale charges. Returns how many entries were removed."""
        now = now if now is not None else time.time()
        removed = 0

        for charge in self.ledger.list_pending(older_than=now - self.ttl_seconds):
            age = now - charge.created_at
            if charge.is_reservation:
                if self.ledger.release(charge.event_id):
                    logger.warning(f"Released stale reservation for event {charge.event_id}")
                    removed += 1
                continue

            _, resolved = self.ledger.resolve(charge.charge_id, ChargeStatus.EXPIRED)
            if resolved:
                audit.log_charge_expired(charge.event_id, charge.charge_id, age)
                logger.info(f"Expired charge {charge.charge_id} for event {charge.event_id} after {age:.0f}s")
                removed += 1

        return removed

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Charge sweep failed: {e}", exc_info=True)
                audit.log_error("charge_sweep", str(e))

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="charge-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Charge sweeper started (ttl {self.ttl_seconds}s, every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Charge sweeper stopped")
