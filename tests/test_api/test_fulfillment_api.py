"""
Tests for the fulfillment HTTP API.

The app is built around the same wired system the service tests use, so the
clock, ids and carrier behaviour are all under test control.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from fulfillment.carriers.client import FakeCarrierClient
from fulfillment.system import FulfillmentSystem
from shared.clock import FixedClock


@pytest.fixture
def api_client(system: FulfillmentSystem) -> TestClient:
    return TestClient(create_app(system))


@pytest.fixture
def pickup(warehouse) -> dict:
    return warehouse.model_dump(mode="json")


@pytest.fixture
def order_body() -> dict:
    return {
        "customer_id": "cust-002",
        "line_items": [
            {"product_id": "prod-77", "product_name": "Brass Table Lamp", "quantity": 2, "unit_price": 899.0},
        ],
        "shipping_address": {
            "name": "Priya Nair",
            "phone": "+919810000002",
            "address_line1": "22 Marine Drive",
            "city": "Kochi",
            "state": "Kerala",
            "pincode": "682031",
        },
        "shipping_cost": 49.0,
    }


class TestHealthEndpoint:

    def test_health_check(self, api_client: TestClient):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_stats(self, api_client: TestClient, pending_order_id: str):
        api_client.post("/payments/confirmed", json={
            "order_id": pending_order_id,
            "confirmed_amount": 1236.0,
            "payment_ref": "pay_NxQ81",
        })

        response = api_client.get("/stats")

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"notifications", "tracking", "carriers", "dedupe_keys"}
        assert data["tracking"]["applied"] == 0


class TestOrderEndpoints:

    def test_create_order(self, api_client: TestClient, order_body: dict):
        response = api_client.post("/orders", json=order_body)

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "ord_0001"
        assert data["status"] == "pending_payment"
        assert data["total_amount"] == 1847.0
        assert data["version"] == 1

    def test_create_order_needs_items(self, api_client: TestClient, order_body: dict):
        response = api_client.post("/orders", json={**order_body, "line_items": []})

        assert response.status_code == 422

    def test_get_order(self, api_client: TestClient, processing_order_id: str):
        response = api_client.get(f"/orders/{processing_order_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        assert response.json()["total_amount"] == 2949.35

    def test_list_orders_for_customer(self, api_client: TestClient, aarav_customer_id: str, order_body: dict):
        api_client.post("/orders", json={**order_body, "customer_id": aarav_customer_id})

        response = api_client.get("/orders", params={"customer_id": aarav_customer_id})

        assert response.status_code == 200
        assert sorted(o["id"] for o in response.json()) == ["ord-1001", "ord_0001"]
        assert len(api_client.get("/orders").json()) == 4

    def test_order_not_found(self, api_client: TestClient):
        response = api_client.get("/orders/ord-404")

        assert response.status_code == 404
        assert response.json()["error"] == "OrderNotFoundError"

    def test_allowed_transitions(self, api_client: TestClient, processing_order_id: str):
        response = api_client.get(f"/orders/{processing_order_id}/transitions")

        assert set(response.json()["allowed"]) == {"shipped", "cancelled"}

    def test_transition(self, api_client: TestClient, processing_order_id: str):
        response = api_client.post(f"/orders/{processing_order_id}/transitions", json={
            "target_status": "cancelled",
            "actor": "support:meera",
            "evidence": {"ticket": "SUP-4411"},
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["status_history"][-1]["evidence"] == {"ticket": "SUP-4411"}

    def test_invalid_transition_is_conflict(self, api_client: TestClient, pending_order_id: str):
        response = api_client.post(f"/orders/{pending_order_id}/transitions", json={
            "target_status": "delivered",
            "actor": "support:meera",
        })

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"
        assert api_client.get(f"/orders/{pending_order_id}").json()["status"] == "pending_payment"

    def test_payment_confirmed(self, api_client: TestClient, pending_order_id: str):
        response = api_client.post("/payments/confirmed", json={
            "order_id": pending_order_id,
            "confirmed_amount": 1236.0,
            "payment_ref": "pay_NxQ81",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "payment_confirmed"
        assert response.json()["payment_ref"] == "pay_NxQ81"

    def test_underpayment_is_refused(self, api_client: TestClient, pending_order_id: str):
        response = api_client.post("/payments/confirmed", json={
            "order_id": pending_order_id,
            "confirmed_amount": 1000.0,
            "payment_ref": "pay_NxQ81",
        })

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidPreconditionError"


class TestShippingEndpoints:

    def test_rates(self, api_client: TestClient):
        response = api_client.post("/rates", json={"weight_kg": 2.0})

        assert response.status_code == 200
        options = response.json()
        assert len(options) == 5
        recommended = [o for o in options if o["recommended"]]
        assert [o["carrier_id"] for o in recommended] == ["xpressbees"]

    def test_rates_reject_zero_weight(self, api_client: TestClient):
        response = api_client.post("/rates", json={"weight_kg": 0})

        assert response.status_code == 422

    def test_ship_with_chosen_carrier(self, api_client: TestClient, pickup: dict, processing_order_id: str):
        response = api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })

        assert response.status_code == 201
        assert response.json()["tracking_id"] == "DELHIVERY00000001"
        assert api_client.get(f"/orders/{processing_order_id}").json()["status"] == "shipped"

    def test_ship_with_recommended_carrier(self, api_client: TestClient, pickup: dict, processing_order_id: str):
        response = api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })

        assert response.status_code == 201
        assert response.json()["carrier_id"] == "xpressbees"

    def test_ship_unpaid_order_is_conflict(self, api_client: TestClient, pickup: dict, pending_order_id: str):
        response = api_client.post(f"/orders/{pending_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })

        assert response.status_code == 409

    def test_carrier_down_is_service_unavailable(
        self, api_client: TestClient, carrier_client: FakeCarrierClient, pickup: dict, processing_order_id: str
    ):
        carrier_client.configure(should_succeed=False)

        response = api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })

        assert response.status_code == 503
        assert response.json()["error"] == "CarrierUnavailableError"
        assert api_client.get(f"/orders/{processing_order_id}").json()["status"] == "processing"

    def test_get_and_poll_shipment(
        self, api_client: TestClient, carrier_client: FakeCarrierClient, pickup: dict,
        processing_order_id: str, make_event,
    ):
        api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })
        carrier_client.add_tracking_event("DELHIVERY00000001", make_event("out-for-delivery", 9, "E1"))

        polled = api_client.post("/shipments/DELHIVERY00000001/poll")
        shipment = api_client.get("/shipments/DELHIVERY00000001")

        assert polled.status_code == 200
        assert [r["outcome"] for r in polled.json()] == ["applied"]
        assert shipment.json()["current_canonical_status"] == "out_for_delivery"
        assert api_client.get("/shipments/NOPE").status_code == 404


class TestCarrierWebhook:

    @pytest.fixture
    def tracking_id(self, api_client: TestClient, pickup: dict, processing_order_id: str) -> str:
        response = api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })
        return response.json()["tracking_id"]

    def test_webhook_applies_event(self, api_client: TestClient, tracking_id: str, processing_order_id: str):
        response = api_client.post("/webhooks/carriers/delhivery", json={
            "tracking_id": tracking_id,
            "external_event_id": "E1",
            "raw_status": "out-for-delivery",
            "occurred_at": "2025-10-06T09:00:00Z",
        })

        assert response.status_code == 200
        assert response.json() == {
            "outcome": "applied",
            "advanced": True,
            "canonical_status": "out_for_delivery",
            "reason": None,
        }
        assert api_client.get(f"/orders/{processing_order_id}").json()["status"] == "out_for_delivery"

    def test_redelivered_webhook(self, api_client: TestClient, tracking_id: str):
        body = {
            "tracking_id": tracking_id,
            "external_event_id": "E1",
            "raw_status": "out-for-delivery",
            "occurred_at": "2025-10-06T09:00:00Z",
        }
        api_client.post("/webhooks/carriers/delhivery", json=body)

        response = api_client.post("/webhooks/carriers/delhivery", json=body)

        assert response.status_code == 200
        assert response.json()["outcome"] == "deduplicated"

    def test_unknown_tracking_id_is_acknowledged(self, api_client: TestClient):
        response = api_client.post("/webhooks/carriers/delhivery", json={
            "tracking_id": "DELHIVERY99999999",
            "raw_status": "delivered",
            "occurred_at": "2025-10-06T09:00:00Z",
        })

        assert response.status_code == 200
        assert response.json()["outcome"] == "rejected"

    def test_unknown_carrier(self, api_client: TestClient):
        response = api_client.post("/webhooks/carriers/pigeon-post", json={
            "tracking_id": "PP1",
            "raw_status": "delivered",
            "occurred_at": "2025-10-06T09:00:00Z",
        })

        assert response.status_code == 404
        assert response.json()["error"] == "UnknownCarrierError"


class TestNotificationEndpoints:

    def test_get_stored_preferences(self, api_client: TestClient, aarav_customer_id: str):
        response = api_client.get(f"/preferences/{aarav_customer_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["global_settings"]["sms_enabled"] is True
        assert data["preferences"]["order_shipped"]["channels"] == ["in_app", "email", "push", "sms"]

    def test_get_default_preferences(self, api_client: TestClient, priya_customer_id: str):
        response = api_client.get(f"/preferences/{priya_customer_id}")

        assert response.status_code == 200
        assert response.json()["preferences"]["order_confirmation"]["channels"] == ["in_app", "email"]

    def test_update_preferences(
        self, api_client: TestClient, system: FulfillmentSystem, aarav_customer_id: str,
        processing_order_id: str, pickup: dict,
    ):
        response = api_client.put(f"/preferences/{aarav_customer_id}", json={
            "preferences": {"order_shipped": {"enabled": True, "channels": ["email"]}},
        })
        assert response.status_code == 200
        assert response.json()["preferences"]["promotional"]["enabled"] is False

        api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })
        system.dispatcher.flush()

        sent = api_client.get("/notifications", params={"order_id": processing_order_id}).json()
        assert [n["channel"] for n in sent] == ["email"]

    def test_list_notifications_by_status(
        self, api_client: TestClient, system: FulfillmentSystem, pending_order_id: str, priya_customer_id: str
    ):
        api_client.post("/payments/confirmed", json={
            "order_id": pending_order_id,
            "confirmed_amount": 1236.0,
            "payment_ref": "pay_NxQ81",
        })
        system.dispatcher.flush()

        response = api_client.get("/notifications", params={"user_id": priya_customer_id, "status": "sent"})

        assert response.status_code == 200
        assert sorted(n["channel"] for n in response.json()) == ["email", "in_app"]

    def test_deliver_deferred(
        self, api_client: TestClient, system: FulfillmentSystem, clock: FixedClock, pickup: dict,
        quiet_hours_order_id: str,
    ):
        clock.set(datetime(2025, 10, 5, 18, 0, tzinfo=timezone.utc))
        api_client.post(f"/orders/{quiet_hours_order_id}/shipment", json={
            "carrier_id": "bluedart",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })
        system.dispatcher.flush()
        held = api_client.get("/notifications", params={"order_id": quiet_hours_order_id}).json()
        assert {n["status"] for n in held} == {"suppressed"}

        clock.set(datetime(2025, 10, 6, 1, 31, tzinfo=timezone.utc))
        response = api_client.post("/notifications/deferred/deliver")

        assert response.status_code == 200
        assert len(response.json()) == 3
        assert {n["status"] for n in response.json()} == {"sent"}


class TestInboxEndpoints:

    @pytest.fixture
    def inbox_ids(self, api_client: TestClient, system: FulfillmentSystem, pickup: dict,
                  processing_order_id: str) -> list[str]:
        """ord-1001 ships: one in-app notification lands in Aarav's inbox."""
        api_client.post(f"/orders/{processing_order_id}/shipment", json={
            "carrier_id": "delhivery",
            "package": {"weight_kg": 2.0},
            "pickup": pickup,
        })
        system.dispatcher.resolve_and_send(
            user_id="cust-001",
            notification_type="account_update",
            data={"update_message": "Your address was changed"},
            transition_kind="account:address-1",
        )
        system.dispatcher.flush()
        page = api_client.get("/notifications/cust-001/inbox").json()
        return [n["id"] for n in page["notifications"]]

    def test_inbox(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.get("/notifications/cust-001/inbox")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["unread_count"] == 2
        assert {n["channel"] for n in data["notifications"]} == {"in_app"}

    def test_inbox_type_filter(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.get("/notifications/cust-001/inbox", params={"type": "order_shipped"})

        assert [n["notification_type"] for n in response.json()["notifications"]] == ["order_shipped"]

    def test_mark_read(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.post(f"/notifications/cust-001/inbox/{inbox_ids[0]}/read")

        assert response.status_code == 200
        assert response.json()["read_at"] is not None
        unread = api_client.get("/notifications/cust-001/inbox", params={"is_read": False}).json()
        assert unread["total"] == 1
        assert unread["unread_count"] == 1

    def test_mark_read_of_someone_elses_notification(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.post(f"/notifications/cust-002/inbox/{inbox_ids[0]}/read")

        assert response.status_code == 404
        assert response.json()["error"] == "NotificationNotFoundError"

    def test_mark_all_read(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.post("/notifications/cust-001/inbox/read")

        assert response.json() == {"marked_read": 2}
        assert api_client.get("/notifications/cust-001/inbox").json()["unread_count"] == 0

    def test_delete(self, api_client: TestClient, inbox_ids: list[str]):
        response = api_client.delete(f"/notifications/cust-001/inbox/{inbox_ids[0]}")

        assert response.status_code == 204
        assert api_client.get("/notifications/cust-001/inbox").json()["total"] == 1
        assert api_client.delete(f"/notifications/cust-001/inbox/{inbox_ids[0]}").status_code == 404
