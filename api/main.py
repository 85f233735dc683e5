"""
FastAPI application for the fulfillment service.

This application provides:
1. Order endpoints (create, read, transition) and the payment gateway hook
2. Rate shopping and shipment booking
3. The carrier webhook and on-demand tracking polls
4. Notification preferences, notification history and the in-app inbox
5. Operational counters (/stats)

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fulfillment.system import FulfillmentSystem, build_system
from shared.config import configure_logging, get_settings
from shared.exceptions import (
    CarrierRequestError,
    CarrierUnavailableError,
    ConcurrentUpdateError,
    InvalidPreconditionError,
    InvalidTransitionError,
    NoEligibleCarrierError,
    NotificationNotFoundError,
    OrderNotFoundError,
    UnknownCarrierError,
)
from shared.models import (
    Address,
    GlobalSettings,
    InboxPage,
    LineItem,
    Notification,
    NotificationPreference,
    NotificationStatus,
    NotificationType,
    Order,
    OrderStatus,
    PackageDetails,
    PaymentConfirmation,
    RawTrackingEvent,
    ShippingAssignment,
    ShippingOption,
    ShippingPreferences,
    TypePreference,
)

logger = logging.getLogger("api")


# =============================================================================
# Request / Response Models
# =============================================================================

class CreateOrderRequest(BaseModel):
    customer_id: str
    line_items: list[LineItem] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_cost: float = Field(default=0.0, ge=0)
    tax_amount: float = Field(default=0.0, ge=0)
    discount_amount: float = Field(default=0.0, ge=0)
    currency: str = "INR"


class TransitionRequest(BaseModel):
    target_status: OrderStatus
    actor: str
    evidence: dict[str, Any] = Field(default_factory=dict)


class RateRequest(BaseModel):
    weight_kg: float = Field(..., gt=0)
    cod_amount: float = Field(default=0.0, ge=0)


class ShipmentCreateRequest(BaseModel):
    """Omit ``carrier_id`` to book the recommended carrier."""
    carrier_id: Optional[str] = None
    package: PackageDetails
    pickup: Address
    preferences: ShippingPreferences = Field(default_factory=ShippingPreferences)


class CarrierWebhook(BaseModel):
    tracking_id: str
    external_event_id: Optional[str] = None
    raw_status: str
    occurred_at: datetime
    location: str = ""
    remarks: Optional[str] = None


class IngestResponse(BaseModel):
    outcome: str
    advanced: bool
    canonical_status: Optional[str] = None
    reason: Optional[str] = None


class PreferenceUpdate(BaseModel):
    preferences: dict[NotificationType, TypePreference] = Field(default_factory=dict)
    global_settings: Optional[GlobalSettings] = None


def _ingest_response(result) -> IngestResponse:
    return IngestResponse(
        outcome=result.outcome.value,
        advanced=result.advanced,
        canonical_status=result.canonical_status.value if result.canonical_status else None,
        reason=result.reason,
    )


# =============================================================================
# Error Mapping
# =============================================================================

ERROR_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (OrderNotFoundError, 404),
    (NotificationNotFoundError, 404),
    (UnknownCarrierError, 404),
    (InvalidTransitionError, 409),
    (InvalidPreconditionError, 409),
    (ConcurrentUpdateError, 409),
    (NoEligibleCarrierError, 422),
    (CarrierRequestError, 502),
    (CarrierUnavailableError, 503),
]


def _register_error_handlers(app: FastAPI):
    for exc_type, status_code in ERROR_STATUS_CODES:
        def handler(request: Request, exc: Exception, status_code=status_code):
            logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
            return JSONResponse(
                status_code=status_code,
                content={"detail": str(exc), "error": type(exc).__name__},
            )
        app.add_exception_handler(exc_type, handler)


# =============================================================================
# App Factory
# =============================================================================

def get_system(request: Request) -> FulfillmentSystem:
    system = request.app.state.system
    if system is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return system


def create_app(system: Optional[FulfillmentSystem] = None) -> FastAPI:
    """
    Build the API around ``system``. Without one, the system is built from
    settings when the app starts and shut down when it stops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.system is None
        if owned:
            settings = get_settings()
            configure_logging(settings.log_level)
            app.state.system = build_system(settings).start()
        logger.info("Fulfillment API started")
        yield
        if owned:
            app.state.system.shutdown()
            app.state.system = None
        logger.info("Shutting down")

    app = FastAPI(
        title="Order Fulfillment & Notification Coordinator",
        description="""
        Order lifecycle, carrier booking and tracking, and customer notifications.

        - `/orders/*` - create orders and move them through their lifecycle
        - `/rates`, `/orders/{id}/shipment` - rate shopping and carrier booking
        - `/webhooks/carriers/*`, `/shipments/*` - tracking updates
        - `/preferences/*`, `/notifications` - who gets told what
        - `/notifications/{user_id}/inbox` - in-app inbox with read state
        """,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.system = system
    _register_error_handlers(app)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health", tags=["Health"])
    def health_check():
        return {"status": "healthy", "service": "fulfillment-coordinator"}

    @app.get("/stats", tags=["Health"])
    def stats(system: FulfillmentSystem = Depends(get_system)):
        return {
            "notifications": system.dispatcher.stats.snapshot(),
            "tracking": system.ingestor.stats.snapshot(),
            "carriers": system.call_policy.get_stats(),
            "dedupe_keys": system.data_store.dedupe_key_count(),
        }

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    @app.post("/orders", response_model=Order, status_code=201, tags=["Orders"])
    def create_order(body: CreateOrderRequest, system: FulfillmentSystem = Depends(get_system)):
        return system.ledger.create_order(
            customer_id=body.customer_id,
            line_items=body.line_items,
            shipping_address=body.shipping_address,
            billing_address=body.billing_address,
            shipping_cost=body.shipping_cost,
            tax_amount=body.tax_amount,
            discount_amount=body.discount_amount,
            currency=body.currency,
        )

    @app.get("/orders", response_model=list[Order], tags=["Orders"])
    def list_orders(customer_id: Optional[str] = None, system: FulfillmentSystem = Depends(get_system)):
        orders = system.data_store.get_orders(customer_id)
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    @app.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
    def get_order(order_id: str, system: FulfillmentSystem = Depends(get_system)):
        return system.ledger.get_order(order_id)

    @app.get("/orders/{order_id}/transitions", tags=["Orders"])
    def allowed_transitions(order_id: str, system: FulfillmentSystem = Depends(get_system)):
        return {"order_id": order_id, "allowed": [s.value for s in system.ledger.allowed_transitions(order_id)]}

    @app.post("/orders/{order_id}/transitions", response_model=Order, tags=["Orders"])
    def transition_order(order_id: str, body: TransitionRequest, system: FulfillmentSystem = Depends(get_system)):
        return system.ledger.transition(order_id, body.target_status, body.actor, body.evidence)

    @app.post("/payments/confirmed", response_model=Order, tags=["Orders"])
    def payment_confirmed(body: PaymentConfirmation, system: FulfillmentSystem = Depends(get_system)):
        return system.ledger.confirm_payment(body)

    # -------------------------------------------------------------------------
    # Shipping
    # -------------------------------------------------------------------------

    @app.post("/rates", response_model=list[ShippingOption], tags=["Shipping"])
    def shop_rates(body: RateRequest, system: FulfillmentSystem = Depends(get_system)):
        return system.rate_shopper.shop(body.weight_kg, body.cod_amount)

    @app.post("/orders/{order_id}/shipment", response_model=ShippingAssignment, status_code=201, tags=["Shipping"])
    def create_shipment(order_id: str, body: ShipmentCreateRequest, system: FulfillmentSystem = Depends(get_system)):
        if body.carrier_id is None:
            return system.coordinator.ship_with_best_rate(order_id, body.package, body.pickup, body.preferences)
        return system.coordinator.create_shipment(
            order_id, body.carrier_id, body.package, body.pickup, body.preferences
        )

    @app.get("/shipments/{tracking_id}", response_model=ShippingAssignment, tags=["Shipping"])
    def get_shipment(tracking_id: str, system: FulfillmentSystem = Depends(get_system)):
        assignment = system.data_store.get_assignment(tracking_id)
        if assignment is None:
            raise HTTPException(status_code=404, detail=f"Shipment not found: {tracking_id}")
        return assignment

    @app.post("/shipments/{tracking_id}/poll", response_model=list[IngestResponse], tags=["Shipping"])
    def poll_shipment(tracking_id: str, system: FulfillmentSystem = Depends(get_system)):
        assignment = system.data_store.get_assignment(tracking_id)
        if assignment is None:
            raise HTTPException(status_code=404, detail=f"Shipment not found: {tracking_id}")
        results = system.ingestor.poll(assignment.carrier_id, tracking_id)
        return [_ingest_response(r) for r in results]

    @app.post("/webhooks/carriers/{carrier_id}", response_model=IngestResponse, tags=["Shipping"])
    def carrier_webhook(carrier_id: str, body: CarrierWebhook, system: FulfillmentSystem = Depends(get_system)):
        """
        Carrier status callback. For a known carrier this always answers 200,
        so carriers do not keep redelivering events we rejected on purpose.
        """
        system.registry.get(carrier_id)
        raw = RawTrackingEvent(**body.model_dump(exclude={"tracking_id"}))
        result = system.ingestor.ingest(carrier_id, body.tracking_id, raw)
        return _ingest_response(result)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    @app.get("/preferences/{user_id}", response_model=NotificationPreference, tags=["Notifications"])
    def get_preferences(user_id: str, system: FulfillmentSystem = Depends(get_system)):
        prefs = system.data_store.get_notification_preferences(user_id)
        return prefs or NotificationPreference.defaults(user_id, system.settings.default_timezone)

    @app.put("/preferences/{user_id}", response_model=NotificationPreference, tags=["Notifications"])
    def update_preferences(user_id: str, body: PreferenceUpdate, system: FulfillmentSystem = Depends(get_system)):
        current = system.data_store.get_notification_preferences(user_id) or NotificationPreference.defaults(
            user_id, system.settings.default_timezone
        )
        updated = current.model_copy(update={
            "preferences": {**current.preferences, **body.preferences},
            "global_settings": body.global_settings or current.global_settings,
            "updated_at": system.clock.now(),
        })
        system.data_store.save_notification_preferences(updated)
        logger.info(f"Preferences updated for {user_id}")
        return updated

    @app.get("/notifications", response_model=list[Notification], tags=["Notifications"])
    def list_notifications(
        user_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        order_id: Optional[str] = None,
        system: FulfillmentSystem = Depends(get_system),
    ):
        return system.data_store.get_notifications(user_id=user_id, status=status, order_id=order_id)

    @app.post("/notifications/deferred/deliver", response_model=list[Notification], tags=["Notifications"])
    def deliver_deferred(system: FulfillmentSystem = Depends(get_system)):
        return system.dispatcher.deliver_deferred()

    @app.get("/notifications/{user_id}/inbox", response_model=InboxPage, tags=["Inbox"])
    def get_inbox(
        user_id: str,
        types: Optional[list[NotificationType]] = Query(None, alias="type"),
        is_read: Optional[bool] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        system: FulfillmentSystem = Depends(get_system),
    ):
        return system.dispatcher.get_inbox(user_id, types=types, is_read=is_read, limit=limit, offset=offset)

    @app.post("/notifications/{user_id}/inbox/read", tags=["Inbox"])
    def mark_all_read(user_id: str, system: FulfillmentSystem = Depends(get_system)):
        return {"marked_read": system.dispatcher.mark_all_as_read(user_id)}

    @app.post("/notifications/{user_id}/inbox/{notification_id}/read", response_model=Notification, tags=["Inbox"])
    def mark_read(user_id: str, notification_id: str, system: FulfillmentSystem = Depends(get_system)):
        return system.dispatcher.mark_as_read(user_id, notification_id)

    @app.delete("/notifications/{user_id}/inbox/{notification_id}", status_code=204, tags=["Inbox"])
    def delete_notification(user_id: str, notification_id: str, system: FulfillmentSystem = Depends(get_system)):
        system.dispatcher.delete_notification(user_id, notification_id)

    return app


app = create_app()
