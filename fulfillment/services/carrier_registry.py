"""
Carrier registry: the read-only catalog of carriers we can ship with.

Entries are loaded once from ``data/carriers.json`` (or passed in directly)
and never change afterwards, so concurrent readers need no locking.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from shared.exceptions import UnknownCarrierError
from shared.models import CanonicalStatus

logger = logging.getLogger("carrier_registry")


class CarrierFeatures(BaseModel):
    real_time_tracking: bool = False
    delivery_prediction: bool = False
    proof_of_delivery: bool = False
    cash_on_delivery: bool = False
    rescheduling: bool = False


# Human-readable labels, in display order.
FEATURE_LABELS = [
    ("real_time_tracking", "Real-time tracking"),
    ("delivery_prediction", "Delivery prediction"),
    ("proof_of_delivery", "Proof of delivery"),
    ("cash_on_delivery", "Cash on delivery"),
    ("rescheduling", "Rescheduling"),
]


class CarrierConfig(BaseModel):
    """Capabilities and pricing of one carrier."""
    id: str
    name: str
    api_endpoint: str = ""
    tracking_url: str = ""
    tracking_prefix: str = "TRK"
    features: CarrierFeatures = Field(default_factory=CarrierFeatures)
    regions: list[str] = Field(default_factory=list)
    avg_transit_days: int = Field(..., ge=0)
    max_weight_kg: float = Field(..., gt=0)
    base_rate: float = Field(..., ge=0)
    per_kg_rate: float = Field(..., ge=0)
    cod_surcharge: Optional[float] = Field(default=None, ge=0)
    status_map: dict[str, CanonicalStatus] = Field(
        default_factory=dict,
        description="Carrier-specific raw status -> canonical status",
    )

    @property
    def supports_cod(self) -> bool:
        return self.features.cash_on_delivery

    @property
    def supports_realtime_tracking(self) -> bool:
        return self.features.real_time_tracking

    def feature_labels(self) -> list[str]:
        return [label for attr, label in FEATURE_LABELS if getattr(self.features, attr)]

    def tracking_link(self, tracking_id: str) -> str:
        return f"{self.tracking_url}{tracking_id}" if self.tracking_url.endswith("/") else self.tracking_url


class CarrierRegistry:
    """Lookup of CarrierConfig by id, in catalog order."""

    def __init__(self, carriers: Iterable[CarrierConfig]):
        self._carriers: dict[str, CarrierConfig] = {}
        for carrier in carriers:
            if carrier.id in self._carriers:
                raise ValueError(f"Duplicate carrier id: {carrier.id}")
            self._carriers[carrier.id] = carrier

    @classmethod
    def from_file(cls, path: Path) -> "CarrierRegistry":
        with open(path, "r") as f:
            data = json.load(f)
        registry = cls(CarrierConfig.model_validate(entry) for entry in data)
        logger.info(f"Loaded {len(registry)} carriers from {path}")
        return registry

    def __len__(self) -> int:
        return len(self._carriers)

    def __contains__(self, carrier_id: str) -> bool:
        return carrier_id in self._carriers

    def get(self, carrier_id: str) -> CarrierConfig:
        carrier = self._carriers.get(carrier_id)
        if carrier is None:
            raise UnknownCarrierError(carrier_id)
        return carrier

    def find(self, carrier_id: str) -> Optional[CarrierConfig]:
        return self._carriers.get(carrier_id)

    def all(self) -> list[CarrierConfig]:
        return list(self._carriers.values())

    def ids(self) -> list[str]:
        return list(self._carriers)
