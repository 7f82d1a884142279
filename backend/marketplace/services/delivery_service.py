# Overview: Delivery dispatch workflow and delivery status machine.

"""
Delivery dispatch

WORKFLOW (create_delivery_workflow):
    1. Existing delivery for the order -> returned as a duplicate (idempotent)
    2. Completed payment required          -> PaymentNotVerified
    3. Order must exist                    -> NotFound
    4. Nearest active driver               -> NoDriverAvailable
    5. Store + customer coordinates        -> LocationUnavailable
    6. Route from the routing provider     -> RouteUnavailable
    7. ETA = now + ceil(duration / 60) minutes
    8. Delivery row (ASSIGNED) and order -> IN_TRANSIT commit together

Provider calls (steps 4-6) run before the write transaction opens.
A concurrent second run loses on the unique deliveries.order_id constraint
and is answered with the winner's delivery.

STATE MACHINE:
    PENDING -> ASSIGNED -> PICKED_UP -> IN_TRANSIT -> DELIVERED
    CANCELLED from any non-terminal state.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import (
    DuplicateDelivery,
    InvalidState,
    InvalidTransition,
    LocationUnavailable,
    MarketplaceError,
    NoDriverAvailable,
    NotFound,
    PaymentNotVerified,
    RouteUnavailable,
    ValidationError,
    wrap_database_error,
)
from ..extensions import db
from ..models import Delivery
from ..models.deliveries import (
    DELIVERY_ASSIGNED,
    DELIVERY_CANCELLED,
    DELIVERY_DELIVERED,
    DELIVERY_IN_TRANSIT,
    DELIVERY_PENDING,
    DELIVERY_PICKED_UP,
    VALID_DELIVERY_STATUSES,
)
from ..models.orders import ORDER_DELIVERED, ORDER_IN_TRANSIT
from marketplace.time_utils import to_utc_z, utcnow
from .concurrency import lock_for_update, run_with_retry
from .geo_service import get_geo_provider
from .matching_service import find_best_driver_for_store, resolve_address, store_coordinates
from .order_service import get_order, lock_order, transition_locked
from .payment_service import has_completed_payment


DELIVERY_TRANSITIONS: dict[str, set[str]] = {
    DELIVERY_PENDING: {DELIVERY_ASSIGNED, DELIVERY_CANCELLED},
    DELIVERY_ASSIGNED: {DELIVERY_PICKED_UP, DELIVERY_CANCELLED},
    DELIVERY_PICKED_UP: {DELIVERY_IN_TRANSIT, DELIVERY_CANCELLED},
    DELIVERY_IN_TRANSIT: {DELIVERY_DELIVERED, DELIVERY_CANCELLED},
    DELIVERY_DELIVERED: set(),
    DELIVERY_CANCELLED: set(),
}

ACTIVE_DELIVERY_STATUSES = {DELIVERY_ASSIGNED, DELIVERY_PICKED_UP, DELIVERY_IN_TRANSIT}


@dataclass
class DeliveryWorkflowResult:
    delivery: Delivery
    duplicate: bool = False
    message: str = "Delivery workflow completed successfully"
    route: dict = field(default_factory=dict)
    driver: dict = field(default_factory=dict)
    estimated_delivery_time: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "delivery": self.delivery.to_dict(),
            "duplicate": self.duplicate,
            "message": self.message,
            "route": self.route,
            "driver": self.driver,
            "estimated_delivery_time": to_utc_z(self.estimated_delivery_time),
        }


def route_summary(distance_m: float | None, duration_s: float | None, coordinates) -> dict:
    return {
        "distance": f"{(distance_m or 0) / 1000:.2f} km",
        "duration": f"{math.ceil((duration_s or 0) / 60)} minutes",
        "coordinates": coordinates,
    }


def _existing_for_order(order_id: int) -> Delivery | None:
    return db.session.query(Delivery).filter_by(order_id=order_id).first()


def _duplicate_result(delivery: Delivery, strict: bool) -> DeliveryWorkflowResult:
    if strict:
        raise DuplicateDelivery(
            "Delivery already exists for this order",
            details={"order_id": delivery.order_id, "delivery_id": delivery.id},
        )
    current_app.logger.warning("Delivery already exists for order %s", delivery.order_id)
    return DeliveryWorkflowResult(
        delivery=delivery,
        duplicate=True,
        message="Delivery already exists for this order",
        estimated_delivery_time=delivery.estimated_delivery_time,
    )


def create_delivery_workflow(order_id: int, strict: bool = False) -> DeliveryWorkflowResult:
    """
    Dispatch a paid, ready order to the nearest driver.

    With strict=True an existing delivery raises DuplicateDelivery instead
    of being returned.
    """
    current_app.logger.info("Starting delivery workflow for order %s", order_id)

    existing = _existing_for_order(order_id)
    if existing:
        return _duplicate_result(existing, strict)

    try:
        if not has_completed_payment(order_id):
            raise PaymentNotVerified(
                f"Payment not completed for order {order_id}",
                details={"order_id": order_id},
            )

        order = get_order(order_id)

        match = find_best_driver_for_store(order.store_id)
        if match is None:
            raise NoDriverAvailable(
                f"No available driver found for order {order_id}",
                details={"order_id": order_id, "store_id": order.store_id},
            )
        driver = match.driver

        origin = store_coordinates(order.store_id)
        destination = resolve_address(order.user.default_address())
        if destination is None:
            raise LocationUnavailable(
                f"Unable to get coordinates for customer {order.user_id}",
                details={"order_id": order_id, "user_id": order.user_id},
            )

        route = get_geo_provider().route(origin, destination)
        if route is None:
            raise RouteUnavailable(
                "Unable to calculate delivery route",
                details={"order_id": order_id},
            )

        eta = utcnow() + timedelta(minutes=math.ceil(route.duration_s / 60))

        def _op() -> Delivery:
            locked = lock_order(order_id)
            transition_locked(locked, ORDER_IN_TRANSIT, driver_id=driver.id)
            delivery = Delivery(
                order_id=locked.id,
                driver_id=driver.id,
                user_id=locked.user_id,
                store_id=locked.store_id,
                delivery_address=locked.delivery_address,
                delivery_status=DELIVERY_ASSIGNED,
                estimated_delivery_time=eta,
                delivery_fee_cents=locked.delivery_fee_cents,
                route_distance_m=int(round(route.distance_m)),
                route_duration_s=int(round(route.duration_s)),
                route_coordinates=json.dumps(route.coordinates),
            )
            db.session.add(delivery)
            db.session.commit()
            return delivery

        try:
            delivery = run_with_retry(_op)
        except IntegrityError:
            db.session.rollback()
            existing = _existing_for_order(order_id)
            if existing is None:
                raise
            return _duplicate_result(existing, strict)

    except MarketplaceError as exc:
        db.session.rollback()
        current_app.logger.error("Delivery workflow failed for order %s: %s", order_id, exc.message)
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Delivery workflow failed for order %s", order_id)
        raise wrap_database_error(exc, "create delivery") from exc

    current_app.logger.info(
        "Delivery %s assigned to driver %s for order %s (%.2f km away)",
        delivery.id, driver.id, order_id, match.distance_km,
    )
    return DeliveryWorkflowResult(
        delivery=delivery,
        route=route_summary(route.distance_m, route.duration_s, route.coordinates),
        driver=driver.contact_info(),
        estimated_delivery_time=eta,
    )


def update_delivery_status(delivery_id: int, status: str) -> Delivery:
    """
    Move a delivery along its status machine.

    DELIVERED also completes the linked order in the same transaction.
    """
    if status not in VALID_DELIVERY_STATUSES:
        raise ValidationError(
            f"Invalid delivery status '{status}'. Must be one of: {', '.join(VALID_DELIVERY_STATUSES)}",
            details={"status": status},
        )

    def _op() -> Delivery:
        delivery = lock_for_update(db.session.query(Delivery).filter_by(id=delivery_id)).first()
        if not delivery:
            raise NotFound(f"Delivery {delivery_id} not found", details={"delivery_id": delivery_id})

        if status not in DELIVERY_TRANSITIONS.get(delivery.delivery_status, set()):
            raise InvalidTransition(
                f"Invalid delivery status transition from {delivery.delivery_status} to {status}",
                details={"from": delivery.delivery_status, "to": status},
            )

        delivery.delivery_status = status
        delivery.updated_at = utcnow()
        if status == DELIVERY_DELIVERED:
            delivery.delivered_at = delivery.updated_at
            order = lock_order(delivery.order_id)
            transition_locked(order, ORDER_DELIVERED)
            order.delivered_at = delivery.delivered_at

        db.session.commit()
        return delivery

    try:
        delivery = run_with_retry(_op)
    except MarketplaceError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise wrap_database_error(exc, "update delivery status") from exc

    current_app.logger.info("Delivery %s moved to %s", delivery_id, status)
    return delivery


def get_delivery(delivery_id: int) -> Delivery:
    delivery = db.session.get(Delivery, delivery_id)
    if not delivery:
        raise NotFound(f"Delivery {delivery_id} not found", details={"delivery_id": delivery_id})
    return delivery


def list_deliveries(driver_id: int | None = None, status: str | None = None) -> list[Delivery]:
    query = db.session.query(Delivery)
    if driver_id is not None:
        query = query.filter(Delivery.driver_id == driver_id)
    if status is not None:
        query = query.filter(Delivery.delivery_status == status)
    return query.order_by(Delivery.created_at.desc(), Delivery.id.desc()).all()


def get_delivery_details(order_id: int) -> dict:
    """Delivery for an order with driver/customer contacts and the decoded route."""
    delivery = _existing_for_order(order_id)
    if not delivery:
        raise NotFound(f"Delivery for order {order_id} not found", details={"order_id": order_id})

    return {
        "delivery_id": delivery.id,
        "order_id": delivery.order_id,
        "status": delivery.delivery_status,
        "driver": delivery.driver.contact_info(),
        "customer": delivery.user.contact_info(),
        "route": route_summary(delivery.route_distance_m, delivery.route_duration_s, delivery.route_points()),
        "delivery_address": delivery.delivery_address,
        "estimated_delivery_time": to_utc_z(delivery.estimated_delivery_time),
        "delivery_fee_cents": delivery.delivery_fee_cents,
        "created_at": to_utc_z(delivery.created_at),
        "updated_at": to_utc_z(delivery.updated_at),
    }


def remove_delivery(delivery_id: int) -> None:
    """Delete a delivery that is not currently being worked."""
    delivery = get_delivery(delivery_id)
    if delivery.delivery_status in ACTIVE_DELIVERY_STATUSES:
        raise InvalidState(
            "Cannot remove an active delivery",
            details={"delivery_id": delivery_id, "status": delivery.delivery_status},
        )
    db.session.delete(delivery)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise wrap_database_error(exc, "remove delivery") from exc
