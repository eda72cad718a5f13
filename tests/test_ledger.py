"""
Unit tests for the pending-payment ledger (both backends).
"""
import threading
import time
from dataclasses import replace

import pytest

from relay.admission.errors import DuplicatePendingCharge
from relay.admission.ledger import (
    ChargeStatus,
    InMemoryLedger,
    PendingCharge,
    SqliteLedger,
    create_ledger,
)

from factories import build_event


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "memory":
        return InMemoryLedger()
    return SqliteLedger(tmp_path / "ledger.db")


def attach(ledger, reservation, charge_id="charge-1"):
    return ledger.put(replace(reservation, charge_id=charge_id, invoice=f"lnbc-{charge_id}"))


class TestReserve:
    """Test atomic reservation of events."""

    def test_first_reservation_created(self, ledger):
        """First reserve for an event creates a reservation."""
        event = build_event(1, "hello")
        reservation, created = ledger.reserve(event, 1000)

        assert created is True
        assert reservation.is_reservation is True
        assert reservation.event_id == event.id
        assert reservation.amount_sats == 1000
        assert reservation.status is ChargeStatus.PENDING

    def test_second_reservation_returns_existing(self, ledger):
        """A second reserve for the same event returns the existing entry."""
        event = build_event(1, "hello")
        ledger.reserve(event, 1000)
        existing, created = ledger.reserve(event, 1000)

        assert created is False
        assert existing.event_id == event.id

    def test_reserve_after_attach_returns_charge(self, ledger):
        """Once attached, reserve hands back the charge with its provider id."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        existing, created = ledger.reserve(event, 1000)
        assert created is False
        assert existing.charge_id == "charge-1"

    def test_concurrent_reserves_create_once(self, ledger):
        """Many threads reserving the same event produce exactly one reservation."""
        event = build_event(1, "contended")
        barrier = threading.Barrier(12)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            _, created = ledger.reserve(event, 1000)
            with lock:
                results.append(created)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(ledger.list_pending()) == 1


class TestPutAndGet:
    """Test storing and looking up charges."""

    def test_get_and_get_by_event(self, ledger):
        """Attached charges are reachable by charge id and event id."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        stored = attach(ledger, reservation)

        assert stored.invoice == "lnbc-charge-1"
        assert ledger.get("charge-1").event_id == event.id
        assert ledger.get_by_event(event.id).charge_id == "charge-1"
        assert ledger.get_by_event(event.id).event == event

    def test_reservation_hidden_from_get_by_event(self, ledger):
        """Reservations without a provider id are not returned by get_by_event."""
        event = build_event(1, "hello")
        ledger.reserve(event, 1000)
        assert ledger.get_by_event(event.id) is None

    def test_unknown_lookups_return_none(self, ledger):
        """Unknown ids are not found."""
        assert ledger.get("nope") is None
        assert ledger.get_by_event("f" * 64) is None
        assert ledger.status_of("nope") is None

    def test_put_without_reservation(self, ledger):
        """put() can store a charge directly."""
        event = build_event(1, "direct")
        stored = ledger.put(PendingCharge(event=event, amount_sats=50, charge_id="c-9", invoice="lnbc"))
        assert ledger.get("c-9").event_id == stored.event_id

    def test_put_same_charge_is_idempotent(self, ledger):
        """Putting the same charge twice keeps one entry."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)
        attach(ledger, reservation)
        assert len(ledger.list_pending()) == 1

    def test_put_second_charge_for_event_rejected(self, ledger):
        """A different charge for an event with an active charge is a duplicate."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation, "charge-1")

        with pytest.raises(DuplicatePendingCharge) as exc_info:
            attach(ledger, reservation, "charge-2")
        assert exc_info.value.charge_id == "charge-1"

    def test_put_requires_charge_id(self, ledger):
        """Reservations cannot be stored through put()."""
        with pytest.raises(ValueError):
            ledger.put(PendingCharge(event=build_event(1), amount_sats=1))


class TestResolve:
    """Test exactly-once terminal transitions."""

    def test_paid_returns_event_once(self, ledger):
        """Resolving as paid hands back the held event exactly once."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        released, ok = ledger.resolve("charge-1", ChargeStatus.PAID)
        assert ok is True
        assert released == event

        again, ok_again = ledger.resolve("charge-1", ChargeStatus.PAID)
        assert ok_again is False
        assert again is None

    @pytest.mark.parametrize("status", [ChargeStatus.FAILED, ChargeStatus.EXPIRED])
    def test_unpaid_outcomes_discard_event(self, ledger, status):
        """Failed and expired charges never return the event."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        released, ok = ledger.resolve("charge-1", status)
        assert ok is True
        assert released is None

    def test_resolved_charge_released_from_ledger(self, ledger):
        """After resolution the charge and event are gone from the active index."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)
        ledger.resolve("charge-1", ChargeStatus.PAID)

        assert ledger.get("charge-1") is None
        assert ledger.get_by_event(event.id) is None
        assert ledger.list_pending() == []
        assert ledger.status_of("charge-1") is ChargeStatus.PAID

    def test_terminal_transition_happens_once(self, ledger):
        """A failed charge cannot later be resolved as paid."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        ledger.resolve("charge-1", ChargeStatus.FAILED)
        released, ok = ledger.resolve("charge-1", ChargeStatus.PAID)

        assert ok is False
        assert released is None
        assert ledger.status_of("charge-1") is ChargeStatus.FAILED

    def test_event_can_be_charged_again_after_resolution(self, ledger):
        """Once resolved, a new charge may be created for the same event."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)
        ledger.resolve("charge-1", ChargeStatus.EXPIRED)

        _, created = ledger.reserve(event, 1000)
        assert created is True

    def test_paid_event_stays_claimed_until_published(self, ledger):
        """A paid event cannot be reserved again until publishing finishes."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)
        ledger.resolve("charge-1", ChargeStatus.PAID)

        claim, created = ledger.reserve(event, 1000)
        assert created is False
        assert claim.status is ChargeStatus.PAID
        assert claim.charge_id == "charge-1"
        assert ledger.wait_for_charge(event.id, timeout=0.1).status is ChargeStatus.PAID

        assert ledger.finish_publishing(event.id) is True
        assert ledger.finish_publishing(event.id) is False
        _, created = ledger.reserve(event, 1000)
        assert created is True

    def test_finish_publishing_ignores_pending_charges(self, ledger):
        """Only paid claims are dropped by finish_publishing()."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        assert ledger.finish_publishing(event.id) is False
        assert ledger.get_by_event(event.id) is not None

    def test_pending_is_not_a_resolution(self, ledger):
        """Resolving to pending is refused."""
        with pytest.raises(ValueError):
            ledger.resolve("charge-1", ChargeStatus.PENDING)

    def test_concurrent_resolves_release_once(self, ledger):
        """Concurrent paid resolutions release the event exactly once."""
        event = build_event(1, "race")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        barrier = threading.Barrier(8)
        released = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result, ok = ledger.resolve("charge-1", ChargeStatus.PAID)
            if ok:
                with lock:
                    released.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert released == [event]


class TestReleaseAndWait:
    """Test reservation release and waiting for in-flight charges."""

    def test_release_drops_reservation(self, ledger):
        """release() removes a reservation so the event can be reserved again."""
        event = build_event(1, "hello")
        ledger.reserve(event, 1000)

        assert ledger.release(event.id) is True
        _, created = ledger.reserve(event, 1000)
        assert created is True

    def test_release_keeps_attached_charge(self, ledger):
        """release() never drops a charge that has a provider id."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)
        attach(ledger, reservation)

        assert ledger.release(event.id) is False
        assert ledger.get("charge-1") is not None

    def test_wait_returns_attached_charge(self, ledger):
        """wait_for_charge() wakes up when another thread attaches the charge."""
        event = build_event(1, "hello")
        reservation, _ = ledger.reserve(event, 1000)

        def attach_later():
            time.sleep(0.1)
            attach(ledger, reservation)

        t = threading.Thread(target=attach_later)
        t.start()
        charge = ledger.wait_for_charge(event.id, timeout=5)
        t.join()

        assert charge is not None
        assert charge.charge_id == "charge-1"

    def test_wait_returns_none_after_release(self, ledger):
        """wait_for_charge() returns None when the reservation is dropped."""
        event = build_event(1, "hello")
        ledger.reserve(event, 1000)

        def release_later():
            time.sleep(0.1)
            ledger.release(event.id)

        t = threading.Thread(target=release_later)
        t.start()
        assert ledger.wait_for_charge(event.id, timeout=5) is None
        t.join()

    def test_wait_times_out(self, ledger):
        """wait_for_charge() gives up after the timeout."""
        event = build_event(1, "hello")
        ledger.reserve(event, 1000)

        started = time.monotonic()
        assert ledger.wait_for_charge(event.id, timeout=0.2) is None
        assert time.monotonic() - started >= 0.15


class TestListPending:
    """Test listing of pending entries."""

    def test_older_than_filter(self, ledger):
        """older_than only returns entries created before the cutoff."""
        old_event = build_event(1, "old")
        new_event = build_event(1, "new")
        ledger.put(PendingCharge(event=old_event, amount_sats=1, charge_id="old", created_at=100.0))
        ledger.put(PendingCharge(event=new_event, amount_sats=1, charge_id="new", created_at=200.0))

        stale = ledger.list_pending(older_than=150.0)
        assert [c.charge_id for c in stale] == ["old"]
        assert len(ledger.list_pending()) == 2


class TestCreateLedger:
    """Test backend selection."""

    def test_memory_by_default(self):
        """No database path selects the in-memory ledger."""
        assert isinstance(create_ledger(None), InMemoryLedger)

    def test_sqlite_with_path(self, tmp_path):
        """A database path selects the SQLite ledger."""
        assert isinstance(create_ledger(str(tmp_path / "l.db")), SqliteLedger)

    def test_sqlite_shared_between_instances(self, tmp_path):
        """Two SQLite ledgers on the same file see each other's charges."""
        path = tmp_path / "shared.db"
        first = SqliteLedger(path)
        second = SqliteLedger(path)

        event = build_event(1, "shared")
        reservation, _ = first.reserve(event, 1000)
        attach(first, reservation)

        _, created = second.reserve(event, 1000)
        assert created is False
        released, ok = second.resolve("charge-1", ChargeStatus.PAID)
        assert ok is True
        assert released == event
        assert first.resolve("charge-1", ChargeStatus.PAID) == (None, False)
