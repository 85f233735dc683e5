"""
Rate shopping: which carriers can take a package, what each would cost, and
which one we recommend.
"""

import logging
import math

from fulfillment.services.carrier_registry import CarrierConfig, CarrierRegistry
from shared.models import ShippingOption

logger = logging.getLogger("rate_shopper")


def quote(carrier: CarrierConfig, weight_kg: float, cod_amount: float = 0.0) -> float:
    """base + per-kg on the weight rounded up to whole kg + COD surcharge when collecting cash."""
    cost = carrier.base_rate + math.ceil(weight_kg) * carrier.per_kg_rate
    if cod_amount > 0 and carrier.cod_surcharge:
        cost += carrier.cod_surcharge
    return round(cost, 2)


class RateShopper:
    """
    Ranks eligible carriers for a package.

    Options come back sorted by (cost, transit days, carrier id), so the
    order is stable for equal prices. Exactly one option is marked
    ``recommended``: the cheapest carrier with real-time tracking, or the
    cheapest overall when none has it. No eligible carrier is an empty list.
    """

    def __init__(self, registry: CarrierRegistry):
        self.registry = registry

    def is_eligible(self, carrier: CarrierConfig, weight_kg: float, cod_amount: float = 0.0) -> bool:
        if weight_kg > carrier.max_weight_kg:
            return False
        if cod_amount > 0 and not carrier.supports_cod:
            return False
        return True

    def shop(self, weight_kg: float, cod_amount: float = 0.0) -> list[ShippingOption]:
        if weight_kg <= 0:
            raise ValueError(f"Package weight must be positive, got {weight_kg}")
        if cod_amount < 0:
            raise ValueError(f"COD amount cannot be negative, got {cod_amount}")

        eligible = [c for c in self.registry.all() if self.is_eligible(c, weight_kg, cod_amount)]
        ranked = sorted(
            eligible,
            key=lambda c: (quote(c, weight_kg, cod_amount), c.avg_transit_days, c.id),
        )
        if not ranked:
            logger.warning(f"No carrier can take {weight_kg}kg (cod={cod_amount})")
            return []

        recommended = next((c for c in ranked if c.supports_realtime_tracking), ranked[0])
        options = [
            ShippingOption(
                carrier_id=c.id,
                carrier_name=c.name,
                cost=quote(c, weight_kg, cod_amount),
                estimated_days=c.avg_transit_days,
                supports_realtime_tracking=c.supports_realtime_tracking,
                features=c.feature_labels(),
                recommended=c.id == recommended.id,
            )
            for c in ranked
        ]
        logger.info(
            f"Rates for {weight_kg}kg: "
            + ", ".join(f"{o.carrier_id}={o.cost:.2f}" for o in options)
            + f" (recommended {recommended.id})"
        )
        return options
