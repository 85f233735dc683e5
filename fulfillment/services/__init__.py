"""
Fulfillment services.

Each service owns one part of the flow and publishes events when its state
changes. None of them knows about notifications.
"""

from fulfillment.services.carrier_registry import CarrierConfig, CarrierRegistry
from fulfillment.services.order_ledger import OrderLedger
from fulfillment.services.rate_shopper import RateShopper
from fulfillment.services.shipment_coordinator import ShipmentCoordinator
from fulfillment.services.tracking_ingestor import IngestOutcome, IngestResult, TrackingIngestor

__all__ = [
    "CarrierConfig",
    "CarrierRegistry",
    "OrderLedger",
    "RateShopper",
    "ShipmentCoordinator",
    "IngestOutcome",
    "IngestResult",
    "TrackingIngestor",
]
