"""
Tests for the carrier API clients.

The HTTP client is exercised against httpx.MockTransport so every status code
and transport failure can be scripted without a network.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from fulfillment.carriers.client import FakeCarrierClient, HttpCarrierClient
from fulfillment.services.carrier_registry import CarrierRegistry
from shared.exceptions import CarrierRequestError, CarrierTransportError
from shared.models import PackageDetails, RawTrackingEvent, ShipmentRequest


@pytest.fixture
def shipment_request(warehouse, package) -> ShipmentRequest:
    return ShipmentRequest(
        order_id="ord-1001",
        carrier_id="delhivery",
        pickup=warehouse,
        delivery=warehouse,
        package=package,
    )


def http_client(registry: CarrierRegistry, handler) -> HttpCarrierClient:
    return HttpCarrierClient(registry, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestHttpCarrierClient:

    def test_create_shipment(self, registry: CarrierRegistry, shipment_request: ShipmentRequest):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={
                "tracking_id": "DL998877",
                "carrier_ref": "R-1",
                "estimated_delivery": "2025-10-09T12:00:00Z",
            })

        shipment = http_client(registry, handler).create_shipment(shipment_request)

        assert shipment.tracking_id == "DL998877"
        assert shipment.estimated_delivery == datetime(2025, 10, 9, 12, tzinfo=timezone.utc)
        assert seen[0].method == "POST"
        assert str(seen[0].url) == "https://track.delhivery.com/api/v1/packages/json/shipments"
        body = json.loads(seen[0].content)
        assert body["order_id"] == "ord-1001"
        assert body["package"]["weight_kg"] == 2.0

    def test_poll_tracking(self, registry: CarrierRegistry):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/tracking/BD123")
            return httpx.Response(200, json={"events": [
                {"event_id": "b1", "status": "Shipment Picked Up", "timestamp": "2025-10-06T09:00:00Z",
                 "location": "Mumbai"},
                {"event_id": "b2", "status": "Shipment Delivered", "timestamp": "2025-10-07T15:30:00+05:30",
                 "location": None, "remarks": "Received by security"},
            ]})

        events = http_client(registry, handler).poll_tracking("bluedart", "BD123")

        assert [e.external_event_id for e in events] == ["b1", "b2"]
        assert events[1].occurred_at == datetime(2025, 10, 7, 10, 0, tzinfo=timezone.utc)
        assert events[1].location == ""
        assert events[1].remarks == "Received by security"

    @pytest.mark.parametrize("status_code", [500, 502, 503, 429])
    def test_server_errors_are_retryable(self, registry: CarrierRegistry, shipment_request, status_code):
        client = http_client(registry, lambda request: httpx.Response(status_code))

        with pytest.raises(CarrierTransportError):
            client.create_shipment(shipment_request)

    @pytest.mark.parametrize("status_code", [400, 401, 404, 422])
    def test_client_errors_are_not_retryable(self, registry: CarrierRegistry, shipment_request, status_code):
        client = http_client(registry, lambda request: httpx.Response(status_code, text="invalid pincode"))

        with pytest.raises(CarrierRequestError) as exc_info:
            client.create_shipment(shipment_request)
        assert "invalid pincode" in str(exc_info.value)

    def test_timeout(self, registry: CarrierRegistry, shipment_request):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(CarrierTransportError) as exc_info:
            http_client(registry, handler).create_shipment(shipment_request)
        assert "timeout" in str(exc_info.value)

    def test_connection_error(self, registry: CarrierRegistry):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CarrierTransportError):
            http_client(registry, handler).poll_tracking("delhivery", "DL1")

    def test_invalid_json(self, registry: CarrierRegistry):
        client = http_client(registry, lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(CarrierTransportError):
            client.poll_tracking("delhivery", "DL1")

    def test_malformed_tracking_payload(self, registry: CarrierRegistry):
        client = http_client(registry, lambda request: httpx.Response(200, json={"events": [{"status": "x"}]}))

        with pytest.raises(CarrierTransportError):
            client.poll_tracking("delhivery", "DL1")

    def test_malformed_shipment_payload(self, registry: CarrierRegistry, shipment_request):
        client = http_client(registry, lambda request: httpx.Response(200, json={"carrier_ref": "R-1"}))

        with pytest.raises(CarrierTransportError):
            client.create_shipment(shipment_request)


class TestFakeCarrierClient:

    def test_tracking_ids_use_carrier_prefix(self, carrier_client: FakeCarrierClient, shipment_request, clock):
        first = carrier_client.create_shipment(shipment_request)
        second = carrier_client.create_shipment(shipment_request.model_copy(update={"carrier_id": "bluedart"}))

        assert first.tracking_id == "DELHIVERY00000001"
        assert first.carrier_ref == "REF_000001"
        assert second.tracking_id == "BD00000002"
        assert (first.estimated_delivery - clock.now()).days == 3
        assert len(carrier_client.create_calls) == 2

    def test_scripted_failures(self, carrier_client: FakeCarrierClient, shipment_request):
        carrier_client.fail_next(1, carrier_id="delhivery")
        carrier_client.fail_next(1, carrier_id="delhivery", retryable=False)

        with pytest.raises(CarrierTransportError):
            carrier_client.create_shipment(shipment_request)
        with pytest.raises(CarrierRequestError):
            carrier_client.create_shipment(shipment_request)
        assert carrier_client.create_shipment(shipment_request).tracking_id == "DELHIVERY00000001"

    def test_configure_failure(self, carrier_client: FakeCarrierClient):
        carrier_client.configure(should_succeed=False, failure_reason="API down")

        with pytest.raises(CarrierTransportError, match="API down"):
            carrier_client.poll_tracking("delhivery", "DL1")

    def test_tracking_events(self, carrier_client: FakeCarrierClient, make_event):
        carrier_client.add_tracking_event("DL1", make_event("picked", 9, "e1"))

        events = carrier_client.poll_tracking("delhivery", "DL1")

        assert [e.raw_status for e in events] == ["picked"]
        assert carrier_client.poll_tracking("delhivery", "DL-unknown") == []
        assert carrier_client.poll_calls == [("delhivery", "DL1"), ("delhivery", "DL-unknown")]

    def test_without_registry(self, shipment_request):
        shipment = FakeCarrierClient().create_shipment(shipment_request)
        assert shipment.tracking_id == "TRK00000001"
