import pytest
from fastapi.testclient import TestClient

from relay.admission.audit import AuditEventType, read_audit_log
from relay.admission.engine import AdmissionConfig, AdmissionEngine
from relay.admission.ledger import InMemoryLedger
from relay.admission.webhook import PaymentWebhookHandler
from relay.dependencies import get_engine, get_event_store, get_ledger, get_webhook_handler
from relay.main import app

from factories import CREATED_AT, FakeGateway, RecordingStore, build_auction, build_bid, build_event


def event_body(event):
    return event.model_dump()


@pytest.fixture
def relay_state():
    """Wire the app with fakes; returns a function to configure the price."""
    state = {}

    def configure(price_sats=0, gateway=None, store=None, verify=False):
        state["store"] = store if store is not None else RecordingStore()
        state["ledger"] = InMemoryLedger()
        state["gateway"] = gateway if gateway is not None else FakeGateway()
        state["engine"] = AdmissionEngine(
            config=AdmissionConfig(price_sats=price_sats, callback_base_url="https://relay.example.com"),
            gateway=state["gateway"],
            ledger=state["ledger"],
            store=state["store"],
        )
        state["handler"] = PaymentWebhookHandler(
            ledger=state["ledger"],
            store=state["store"],
            gateway=state["gateway"],
            verify_with_provider=verify,
        )
        app.dependency_overrides[get_engine] = lambda: state["engine"]
        app.dependency_overrides[get_webhook_handler] = lambda: state["handler"]
        app.dependency_overrides[get_ledger] = lambda: state["ledger"]
        app.dependency_overrides[get_event_store] = lambda: state["store"]
        return state

    yield configure
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


class TestHealth:
    """Test the root endpoint."""

    def test_root(self, client):
        """Root returns relay information."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["name"] == "JustBazar Relay"
        assert "payment_required" in data


class TestSubmitEventFree:
    """Test event submission with gating disabled."""

    def test_valid_auction_stored(self, client, relay_state):
        """Accepted events are stored and answered with 200."""
        state = relay_state(price_sats=0)
        auction = build_auction()

        response = client.post("/api/v1/events/", json=event_body(auction))

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        assert state["store"].save_calls == 1

    def test_missing_closing_time_rejected(self, client, relay_state):
        """Invalid auctions are rejected with 400 and the reason."""
        state = relay_state(price_sats=0)

        response = client.post("/api/v1/events/", json=event_body(build_auction(closes_at=None)))

        assert response.status_code == 400
        data = response.json()
        assert data["status"] == "rejected"
        assert data["message"] == "invalid: missing closing time"
        assert state["store"].save_calls == 0
        assert len(state["ledger"]) == 0

    def test_bid_flow(self, client, relay_state):
        """Bids must reference stored auctions and beat the highest bid."""
        relay_state(price_sats=0)
        auction = build_auction(starting_price=100)
        client.post("/api/v1/events/", json=event_body(auction))

        first = client.post("/api/v1/events/", json=event_body(build_bid(auction.id, 150, created_at=CREATED_AT + 10)))
        low = client.post("/api/v1/events/", json=event_body(build_bid(auction.id, 150, created_at=CREATED_AT + 20)))
        missing = client.post("/api/v1/events/", json=event_body(build_bid("f" * 64, 150)))

        assert first.status_code == 200
        assert low.json()["message"] == "invalid: bid-too-low"
        assert missing.json()["message"] == "invalid: auction-not-found"

    def test_tampered_event_rejected(self, client, relay_state):
        """Events whose id does not match their content are refused."""
        relay_state(price_sats=0)
        body = event_body(build_event(1, "original"))
        body["content"] = "tampered"

        response = client.post("/api/v1/events/", json=body)

        assert response.status_code == 400
        assert "event id" in response.json()["detail"]

    def test_malformed_body(self, client, relay_state):
        """Bodies that are not events fail validation."""
        relay_state(price_sats=0)
        response = client.post("/api/v1/events/", json={"kind": 1})
        assert response.status_code == 422

    def test_store_failure_on_accept(self, client, relay_state):
        """Accepted events the store refuses answer 500 and are audited."""
        relay_state(price_sats=0, store=RecordingStore(fail_saves=True))
        event = build_event(1, "nowhere to go")

        response = client.post("/api/v1/events/", json=event_body(event))

        assert response.status_code == 500
        records = read_audit_log(event_type=AuditEventType.ERROR)
        assert records[0]["event_id"] == event.id
        assert records[0]["data"]["error_type"] == "store_write"

    def test_pay_for_event_not_available(self, client, relay_state):
        """Invoices are not issued when the relay is free."""
        relay_state(price_sats=0)
        response = client.post("/pay-for-event", json=event_body(build_event(1, "x")))
        assert response.status_code == 409


class TestSubmitEventPaid:
    """Test the paid admission flow end to end."""

    def test_submission_requires_payment(self, client, relay_state):
        """Gated submissions answer 402 with the charge to pay."""
        state = relay_state(price_sats=1000)
        event = build_bid("f" * 64, 5000)

        response = client.post("/api/v1/events/", json=event_body(event))

        assert response.status_code == 402
        data = response.json()
        assert data["status"] == "pending"
        assert data["charge"]["charge_id"] == "charge-1"
        assert data["charge"]["amount_sats"] == 1000
        assert data["charge"]["invoice"].startswith("lnbc")
        assert state["store"].save_calls == 0

    def test_resubmission_same_charge(self, client, relay_state):
        """Resubmitting before payment returns the same charge."""
        state = relay_state(price_sats=1000)
        event = build_event(1, "pay me")

        first = client.post("/pay-for-event", json=event_body(event))
        second = client.post("/api/v1/events/", json=event_body(event))

        assert first.status_code == 200
        assert first.json()["charge"]["charge_id"] == second.json()["charge"]["charge_id"]
        assert len(state["gateway"].created) == 1

    def test_payment_backend_unavailable(self, client, relay_state):
        """Gateway failures answer 503 and do not store the event."""
        state = relay_state(price_sats=1000, gateway=FakeGateway(fail=True))

        response = client.post("/api/v1/events/", json=event_body(build_event(1, "x")))

        assert response.status_code == 503
        assert response.json()["message"] == "payment-backend-unavailable: payment backend unavailable"
        assert state["store"].save_calls == 0

    def test_pay_for_event_backend_unavailable(self, client, relay_state):
        """The invoice route reports gateway failures as 503."""
        relay_state(price_sats=1000, gateway=FakeGateway(fail=True))
        response = client.post("/pay-for-event", json=event_body(build_event(1, "x")))
        assert response.status_code == 503

    def test_payment_status_endpoint(self, client, relay_state):
        """Clients can poll the pending charge of an event."""
        relay_state(price_sats=1000)
        event = build_event(1, "poll me")
        client.post("/api/v1/events/", json=event_body(event))

        response = client.get(f"/api/v1/events/{event.id}/payment")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert client.get(f"/api/v1/events/{'f' * 64}/payment").status_code == 404

    def test_webhook_publishes_once(self, client, relay_state):
        """price=1000: webhook success stores the event once, duplicates are no-ops."""
        state = relay_state(price_sats=1000)
        event = build_bid("f" * 64, 5000)
        charge_id = client.post("/api/v1/events/", json=event_body(event)).json()["charge"]["charge_id"]

        first = client.post(f"/payment-update/{event.id}", json={"id": charge_id, "status": "completed"})
        second = client.post(f"/payment-update/{event.id}", json={"id": charge_id, "status": "completed"})

        assert first.status_code == 200
        assert first.json()["result"] == "published"
        assert second.status_code == 200
        assert second.json()["result"] == "ignored"
        assert state["store"].save_calls == 1

        listed = client.get("/api/v1/events/", params={"auction": "f" * 64}).json()
        assert listed["total_count"] == 1
        assert listed["events"][0]["id"] == event.id

    def test_webhook_failed_payment(self, client, relay_state):
        """Failed payments never reach the store."""
        state = relay_state(price_sats=1000)
        event = build_event(1, "fails")
        client.post("/api/v1/events/", json=event_body(event))

        response = client.post(f"/payment-update/{event.id}", json={"status": "error"})

        assert response.json()["result"] == "discarded"
        assert state["store"].save_calls == 0

    def test_webhook_unknown_reference(self, client, relay_state):
        """Unknown references answer 200 so the provider stops retrying."""
        relay_state(price_sats=1000)
        response = client.post("/payment-update/unknown", json={"status": "completed"})
        assert response.status_code == 200
        assert response.json()["result"] == "ignored"

    def test_webhook_without_body(self, client, relay_state):
        """Callbacks without a body are accepted."""
        relay_state(price_sats=1000)
        response = client.post("/payment-update/unknown")
        assert response.status_code == 200

    def test_webhook_provider_unreachable(self, client, relay_state):
        """Failed provider confirmation answers 502 and keeps the charge."""
        gateway = FakeGateway()
        state = relay_state(price_sats=1000, gateway=gateway, verify=True)
        event = build_event(1, "retry later")
        client.post("/api/v1/events/", json=event_body(event))
        gateway.fail = True

        response = client.post(f"/payment-update/{event.id}", json={"status": "completed"})

        assert response.status_code == 502
        assert state["ledger"].get_by_event(event.id) is not None

    def test_webhook_store_failure(self, client, relay_state):
        """Paid events that cannot be stored answer 500."""
        state = relay_state(price_sats=1000, store=RecordingStore(fail_saves=True))
        event = build_event(1, "unlucky")
        client.post("/api/v1/events/", json=event_body(event))

        response = client.post(f"/payment-update/{event.id}", json={"status": "completed"})

        assert response.status_code == 500
        assert "reconciliation" in response.json()["detail"]
        assert state["store"].save_calls == 1


class TestListEvents:
    """Test reading stored events."""

    def test_filter_by_kind(self, client, relay_state):
        """Events can be filtered by kind."""
        relay_state(price_sats=0)
        client.post("/api/v1/events/", json=event_body(build_auction()))
        client.post("/api/v1/events/", json=event_body(build_event(1, "note")))

        response = client.get("/api/v1/events/", params={"kind": 33222})

        assert response.status_code == 200
        assert response.json()["total_count"] == 1
        assert response.json()["events"][0]["kind"] == 33222
