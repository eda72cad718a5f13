# relay/admission/ledger.py
"""
Pending-payment ledger.

Holds events that are waiting for their charge to be paid. The ledger is the
only shared mutable state of the admission workflow, so it owns both atomic
operations the workflow depends on:

- reserve(): "is there already an active charge for this event?" and
  "claim the event" happen in one step, so concurrent submissions of the same
  event never create two invoices.
- resolve(): a charge moves out of `pending` exactly once. Later calls for the
  same charge are no-ops that report ok=False.

Two backends are provided:
- InMemoryLedger: single-process relays and tests
- SqliteLedger: shared between processes through a database file

A reservation is a pending charge without a provider charge id yet. It exists
only while the engine talks to the payment provider and is either completed
with put() or dropped with release().

A charge resolved as paid keeps its event claimed until finish_publishing()
is called after the event is stored. reserve() returns that paid entry, so a
resubmission arriving while the webhook is still storing the event is never
invoiced a second time.
"""
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from relay.admission.errors import DuplicatePendingCharge
from relay.models.event import Event

logger = logging.getLogger(__name__)

# How many resolved charge ids the in-memory ledger remembers
RESOLVED_HISTORY_SIZE = 10_000
WAIT_POLL_SECONDS = 0.05


class ChargeStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ChargeStatus.PENDING


@dataclass(frozen=True)
class PendingCharge:
    """An event held until its charge is paid."""
    event: Event
    amount_sats: int
    charge_id: Optional[str] = None
    invoice: Optional[str] = None
    status: ChargeStatus = ChargeStatus.PENDING
    created_at: float = field(default_factory=time.time)
    resolved_at: Optional[float] = None

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def is_reservation(self) -> bool:
        return self.charge_id is None

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data.pop("event")
        data["event_id"] = self.event_id
        data["status"] = self.status.value
        return data


def _require_terminal(status: ChargeStatus) -> None:
    if not status.is_terminal:
        raise ValueError(f"Cannot resolve a charge to non-terminal status '{status.value}'")


class PendingPaymentLedger(Protocol):
    def reserve(self, event: Event, amount_sats: int) -> Tuple[PendingCharge, bool]:
        ...

    def put(self, charge: PendingCharge) -> PendingCharge:
        ...

    def release(self, event_id: str) -> bool:
        ...

    def wait_for_charge(self, event_id: str, timeout: float) -> Optional[PendingCharge]:
        ...

    def get(self, charge_id: str) -> Optional[PendingCharge]:
        ...

    def get_by_event(self, event_id: str) -> Optional[PendingCharge]:
        ...

    def status_of(self, charge_id: str) -> Optional[ChargeStatus]:
        ...

    def resolve(self, charge_id: str, status: ChargeStatus) -> Tuple[Optional[Event], bool]:
        ...

    def finish_publishing(self, event_id: str) -> bool:
        ...

    def list_pending(self, older_than: Optional[float] = None) -> List[PendingCharge]:
        ...


class InMemoryLedger:
    """
    Process-local ledger.

    All state sits behind one lock; the condition on that lock wakes
    submitters waiting for another request's reservation to complete.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._by_event: Dict[str, PendingCharge] = {}
        self._by_charge: Dict[str, str] = {}
        self._resolved: "OrderedDict[str, ChargeStatus]" = OrderedDict()

    def reserve(self, event: Event, amount_sats: int) -> Tuple[PendingCharge, bool]:
        with self._lock:
            existing = self._by_event.get(event.id)
            if existing is not None:
                return existing, False

            reservation = PendingCharge(event=event, amount_sats=amount_sats)
            self._by_event[event.id] = reservation
            return reservation, True

    def put(self, charge: PendingCharge) -> PendingCharge:
        if charge.charge_id is None:
            raise ValueError("Only charges with a provider id can be stored")

        with self._changed:
            current = self._by_event.get(charge.event_id)
            if current is not None and not current.is_reservation:
                if current.charge_id == charge.charge_id:
                    return current
                raise DuplicatePendingCharge(charge.event_id, current.charge_id)

            stored = replace(charge, status=ChargeStatus.PENDING, resolved_at=None)
            self._by_event[charge.event_id] = stored
            self._by_charge[charge.charge_id] = charge.event_id
            self._changed.notify_all()
            return stored

    def release(self, event_id: str) -> bool:
        with self._changed:
            current = self._by_event.get(event_id)
            if current is None or not current.is_reservation:
                return False
            del self._by_event[event_id]
            self._changed.notify_all()
            return True

    def wait_for_charge(self, event_id: str, timeout: float) -> Optional[PendingCharge]:
        def settled() -> bool:
            current = self._by_event.get(event_id)
            return current is None or not current.is_reservation

        with self._changed:
            self._changed.wait_for(settled, timeout=timeout)
            current = self._by_event.get(event_id)
            if current is None or current.is_reservation:
                return None
            return current

    def get(self, charge_id: str) -> Optional[PendingCharge]:
        with self._lock:
            event_id = self._by_charge.get(charge_id)
            if event_id is None:
                return None
            return self._by_event.get(event_id)

    def get_by_event(self, event_id: str) -> Optional[PendingCharge]:
        with self._lock:
            current = self._by_event.get(event_id)
            if current is None or current.is_reservation or current.status is not ChargeStatus.PENDING:
                return None
            return current

    def status_of(self, charge_id: str) -> Optional[ChargeStatus]:
        with self._lock:
            if charge_id in self._by_charge:
                return ChargeStatus.PENDING
            return self._resolved.get(charge_id)

    def resolve(self, charge_id: str, status: ChargeStatus) -> Tuple[Optional[Event], bool]:
        _require_terminal(status)

        with self._changed:
            event_id = self._by_charge.pop(charge_id, None)
            if event_id is None:
                return None, False

            charge = self._by_event.pop(event_id)
            if status is ChargeStatus.PAID:
                self._by_event[event_id] = replace(charge, status=status, resolved_at=time.time())
            self._resolved[charge_id] = status
            while len(self._resolved) > RESOLVED_HISTORY_SIZE:
                self._resolved.popitem(last=False)
            self._changed.notify_all()

        logger.info(f"Charge {charge_id} for event {event_id} resolved as {status.value}")
        if status is ChargeStatus.PAID:
            return charge.event, True
        return None, True

    def finish_publishing(self, event_id: str) -> bool:
        """Drop the claim a paid charge holds on its event once the event is stored."""
        with self._changed:
            current = self._by_event.get(event_id)
            if current is None or current.status is not ChargeStatus.PAID:
                return False
            del self._by_event[event_id]
            self._changed.notify_all()
            return True

    def list_pending(self, older_than: Optional[float] = None) -> List[PendingCharge]:
        with self._lock:
            charges = [charge for charge in self._by_event.values() if charge.status is ChargeStatus.PENDING]
        if older_than is not None:
            charges = [charge for charge in charges if charge.created_at < older_than]
        return charges

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_event)


class SqliteLedger:
    """
    Ledger backed by a SQLite file so every relay process sees the same charges.

    The partial unique index on event_id enforces one pending charge per event;
    resolve() is a compare-and-swap on the status column.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS charges(
                  row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  charge_id TEXT UNIQUE,
                  event_id TEXT NOT NULL,
                  event_json TEXT,
                  amount_sats INTEGER NOT NULL,
                  invoice TEXT,
                  status TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  resolved_at REAL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS charges_one_pending_per_event
                  ON charges(event_id) WHERE status = 'pending';
                """
            )
        finally:
            conn.close()

    @staticmethod
    def _row_to_charge(row: sqlite3.Row) -> PendingCharge:
        return PendingCharge(
            event=Event.model_validate_json(row["event_json"]),
            amount_sats=int(row["amount_sats"]),
            charge_id=row["charge_id"],
            invoice=row["invoice"],
            status=ChargeStatus(row["status"]),
            created_at=float(row["created_at"]),
            resolved_at=row["resolved_at"],
        )

    @staticmethod
    def _pending_row(conn: sqlite3.Connection, event_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM charges WHERE event_id = ? AND status = 'pending'",
            (event_id,),
        ).fetchone()

    @staticmethod
    def _claiming_row(conn: sqlite3.Connection, event_id: str) -> Optional[sqlite3.Row]:
        # A paid row keeps its event_json until the event has been published
        return conn.execute(
            """
            SELECT * FROM charges
            WHERE event_id = ?
              AND (status = 'pending' OR (status = 'paid' AND event_json IS NOT NULL))
            ORDER BY row_id DESC LIMIT 1
            """,
            (event_id,),
        ).fetchone()

    def reserve(self, event: Event, amount_sats: int) -> Tuple[PendingCharge, bool]:
        reservation = PendingCharge(event=event, amount_sats=amount_sats)
        with self._transaction() as conn:
            row = self._claiming_row(conn, event.id)
            if row is not None:
                return self._row_to_charge(row), False

            conn.execute(
                """
                INSERT INTO charges(event_id, event_json, amount_sats, status, created_at)
                VALUES(?, ?, ?, 'pending', ?)
                """,
                (event.id, event.to_json(), amount_sats, reservation.created_at),
            )
        return reservation, True

    def put(self, charge: PendingCharge) -> PendingCharge:
        if charge.charge_id is None:
            raise ValueError("Only charges with a provider id can be stored")

        with self._transaction() as conn:
            row = self._pending_row(conn, charge.event_id)
            if row is not None and row["charge_id"] is not None:
                if row["charge_id"] == charge.charge_id:
                    return self._row_to_charge(row)
                raise DuplicatePendingCharge(charge.event_id, row["charge_id"])

            if row is not None:
                conn.execute(
                    "UPDATE charges SET charge_id = ?, invoice = ? WHERE row_id = ?",
                    (charge.charge_id, charge.invoice, row["row_id"]),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO charges(charge_id, event_id, event_json, amount_sats, invoice, status, created_at)
                    VALUES(?, ?, ?, ?, ?, 'pending', ?)
                    """,
                    (
                        charge.charge_id,
                        charge.event_id,
                        charge.event.to_json(),
                        charge.amount_sats,
                        charge.invoice,
                        charge.created_at,
                    ),
                )
            stored = self._pending_row(conn, charge.event_id)
        return self._row_to_charge(stored)

    def release(self, event_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM charges WHERE event_id = ? AND status = 'pending' AND charge_id IS NULL",
                (event_id,),
            )
            return cursor.rowcount > 0

    def wait_for_charge(self, event_id: str, timeout: float) -> Optional[PendingCharge]:
        deadline = time.monotonic() + timeout
        while True:
            conn = self._connect()
            try:
                row = self._claiming_row(conn, event_id)
            finally:
                conn.close()

            if row is None:
                return None
            if row["charge_id"] is not None:
                return self._row_to_charge(row)
            if time.monotonic() >= deadline:
                return None
            time.sleep(WAIT_POLL_SECONDS)

    def get(self, charge_id: str) -> Optional[PendingCharge]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM charges WHERE charge_id = ? AND status = 'pending'",
                (charge_id,),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_charge(row) if row is not None else None

    def get_by_event(self, event_id: str) -> Optional[PendingCharge]:
        conn = self._connect()
        try:
            row = self._pending_row(conn, event_id)
        finally:
            conn.close()
        if row is None or row["charge_id"] is None:
            return None
        return self._row_to_charge(row)

    def status_of(self, charge_id: str) -> Optional[ChargeStatus]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT status FROM charges WHERE charge_id = ?",
                (charge_id,),
            ).fetchone()
        finally:
            conn.close()
        return ChargeStatus(row["status"]) if row is not None else None

    def resolve(self, charge_id: str, status: ChargeStatus) -> Tuple[Optional[Event], bool]:
        _require_terminal(status)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT event_id, event_json FROM charges WHERE charge_id = ? AND status = 'pending'",
                (charge_id,),
            ).fetchone()
            if row is None:
                return None, False

            conn.execute(
                """
                UPDATE charges
                SET status = ?, resolved_at = ?,
                    event_json = CASE WHEN ? = 'paid' THEN event_json ELSE NULL END
                WHERE charge_id = ? AND status = 'pending'
                """,
                (status.value, time.time(), status.value, charge_id),
            )

        logger.info(f"Charge {charge_id} for event {row['event_id']} resolved as {status.value}")
        if status is ChargeStatus.PAID:
            return Event.model_validate_json(row["event_json"]), True
        return None, True

    def finish_publishing(self, event_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE charges SET event_json = NULL
                WHERE event_id = ? AND status = 'paid' AND event_json IS NOT NULL
                """,
                (event_id,),
            )
            return cursor.rowcount > 0

    def list_pending(self, older_than: Optional[float] = None) -> List[PendingCharge]:
        query = "SELECT * FROM charges WHERE status = 'pending'"
        params: Tuple = ()
        if older_than is not None:
            query += " AND created_at < ?"
            params = (older_than,)

        conn = self._connect()
        try:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        finally:
            conn.close()
        return [self._row_to_charge(row) for row in rows]


def create_ledger(db_path: Optional[str] = None):
    """Build the ledger backend: SQLite when a path is given, memory otherwise."""
    if db_path:
        logger.info(f"Using SQLite pending-payment ledger at {db_path}")
        return SqliteLedger(Path(db_path))
    logger.info("Using in-memory pending-payment ledger")
    return InMemoryLedger()
