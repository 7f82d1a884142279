# Overview: Reactions to order lifecycle events.

from __future__ import annotations

from flask import current_app

from ..errors import MarketplaceError
from .delivery_service import DeliveryWorkflowResult, create_delivery_workflow
from .payment_service import record_delivery_outcome


def on_order_ready_for_pickup(order_id: int) -> DeliveryWorkflowResult | None:
    """
    Dispatch an order that just reached READY_FOR_PICKUP.

    The outcome is written to the order's payment records either way.
    Returns None when dispatch failed.
    """
    current_app.logger.info("Handling ready-for-pickup for order %s", order_id)

    try:
        result = create_delivery_workflow(order_id)
    except MarketplaceError as exc:
        current_app.logger.error("Failed to initiate delivery for order %s: %s", order_id, exc.message)
        _record(order_id, error=exc.message)
        return None

    current_app.logger.info(
        "Delivery workflow initiated for order %s (delivery=%s, driver=%s, eta=%s)",
        order_id,
        result.delivery.id,
        result.delivery.driver_id,
        result.estimated_delivery_time,
    )
    _record(order_id, delivery_id=result.delivery.id)
    return result


def _record(order_id: int, delivery_id: int | None = None, error: str | None = None) -> None:
    try:
        record_delivery_outcome(order_id, delivery_id=delivery_id, error=error)
    except MarketplaceError:
        current_app.logger.exception("Failed to record delivery outcome for order %s", order_id)
