# Overview: Order workflow; creation with stock reservation, status machine, confirm/cancel/remove.

"""
Order workflow

STATE MACHINE:
    PENDING -> CONFIRMED -> PREPARING -> READY_FOR_PICKUP -> IN_TRANSIT -> DELIVERED
    CANCELLED is reachable from every state before IN_TRANSIT.
    DELIVERED, CANCELLED and REFUNDED are terminal.

RULES:
1. create_order is one transaction: order, items, allocations and ledger
   reservations commit together or not at all.
2. Every transition locks the order row and is version-checked
   (Order.version_id). A conflicting writer gets StaleDataError, the
   operation is retried and the transition re-validated on fresh state.
3. Stock moves only through inventory_service primitives, recorded per
   inventory record in StockAllocation rows.
4. Cancellation releases stock best-effort: per-allocation failures are
   logged and returned to the caller, never raised.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    InsufficientStock,
    InvalidState,
    InvalidTransition,
    MarketplaceError,
    NotFound,
    ValidationError,
    wrap_database_error,
)
from ..extensions import db
from ..models import Delivery, Order, OrderItem, Payment, StockAllocation
from ..models.inventory import (
    ALLOCATION_COMMITTED,
    ALLOCATION_RELEASED,
    ALLOCATION_RESERVED,
    ALLOCATION_RETURNED,
)
from ..models.orders import (
    METHOD_PICKUP,
    METHOD_STANDARD,
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_IN_TRANSIT,
    ORDER_PENDING,
    ORDER_PREPARING,
    ORDER_READY_FOR_PICKUP,
    ORDER_REFUNDED,
    VALID_DELIVERY_METHODS,
    VALID_ORDER_STATUSES,
)
from marketplace.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .directory_service import find_product, find_store, find_user
from .inventory_service import (
    available_for_product,
    confirm_sale,
    release,
    reserve_for_product,
    return_to_stock,
)
from .sequence_service import next_order_number


ORDER_TRANSITIONS: dict[str, set[str]] = {
    ORDER_PENDING: {ORDER_CONFIRMED, ORDER_CANCELLED},
    ORDER_CONFIRMED: {ORDER_PREPARING, ORDER_CANCELLED},
    ORDER_PREPARING: {ORDER_READY_FOR_PICKUP, ORDER_CANCELLED},
    ORDER_READY_FOR_PICKUP: {ORDER_IN_TRANSIT, ORDER_CANCELLED},
    ORDER_IN_TRANSIT: {ORDER_DELIVERED},
    ORDER_DELIVERED: set(),
    ORDER_CANCELLED: set(),
    ORDER_REFUNDED: set(),
}

MAX_PAGE_SIZE = 100


@dataclass
class OrderLineRequest:
    product_id: int
    quantity: int


@dataclass
class CreateOrderRequest:
    user_id: int
    store_id: int
    delivery_address: str
    items: list[OrderLineRequest]
    delivery_method: str = METHOD_STANDARD
    discount_amount_cents: int = 0


@dataclass
class CancellationResult:
    """Cancelled order plus the allocations whose stock could not be put back."""
    order: Order
    failed_releases: list[dict] = field(default_factory=list)

    @property
    def fully_released(self) -> bool:
        return not self.failed_releases


def _guarded(op, action: str):
    """Run op with retry; roll back and surface failures as MarketplaceError."""
    try:
        return run_with_retry(op)
    except MarketplaceError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to %s", action)
        raise wrap_database_error(exc, action) from exc


def lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise NotFound(f"Order with ID {order_id} not found", details={"order_id": order_id})
    return order


def compute_tax_cents(subtotal_cents: int) -> int:
    """Tax at ORDER_TAX_RATE_BPS, rounded half-up to the cent."""
    bps = current_app.config["ORDER_TAX_RATE_BPS"]
    return (subtotal_cents * bps + 5000) // 10000


def validate_transition(current_status: str, new_status: str) -> None:
    if new_status not in VALID_ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(VALID_ORDER_STATUSES)}",
            details={"status": new_status},
        )
    if new_status not in ORDER_TRANSITIONS.get(current_status, set()):
        raise InvalidTransition(
            f"Invalid status transition from {current_status} to {new_status}",
            details={"from": current_status, "to": new_status},
        )


# =============================================================================
# Creation
# =============================================================================

def _validate_request(request: CreateOrderRequest) -> dict[int, int]:
    if not request.items:
        raise ValidationError("Order must contain at least one item")
    if request.delivery_method not in VALID_DELIVERY_METHODS:
        raise ValidationError(
            f"Invalid delivery method '{request.delivery_method}'",
            details={"delivery_method": request.delivery_method},
        )
    if not request.delivery_address or not request.delivery_address.strip():
        raise ValidationError("delivery_address is required")
    if not isinstance(request.discount_amount_cents, int) or request.discount_amount_cents < 0:
        raise ValidationError(
            "discount_amount_cents must be a non-negative integer",
            details={"discount_amount_cents": request.discount_amount_cents},
        )

    combined: dict[int, int] = {}
    for line in request.items:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"product_id": line.product_id, "quantity": line.quantity},
            )
        combined[line.product_id] = combined.get(line.product_id, 0) + line.quantity
    return combined


def create_order(request: CreateOrderRequest) -> Order:
    """
    Create a PENDING order and reserve its stock.

    Lines for the same product are checked against store stock on their
    combined quantity. Totals:
        subtotal = sum(unit_price * quantity)
        delivery fee = 0 for pickup, store fee otherwise
        tax = subtotal * ORDER_TAX_RATE_BPS / 10000 (half-up)
        total = subtotal + delivery fee + tax - discount
    """
    combined = _validate_request(request)

    def _op() -> Order:
        find_user(request.user_id)
        store = find_store(request.store_id)

        products = {}
        for product_id, requested in combined.items():
            product = find_product(product_id)
            available = available_for_product(product_id, store.id)
            if available < requested:
                raise InsufficientStock(
                    f"Insufficient stock for product {product.name}. "
                    f"Available: {available}, Requested: {requested}",
                    details={
                        "product_id": product_id,
                        "available": available,
                        "requested": requested,
                    },
                )
            products[product_id] = product

        items = []
        subtotal = 0
        for line in request.items:
            unit_price = products[line.product_id].price_cents
            line_total = unit_price * line.quantity
            subtotal += line_total
            items.append(OrderItem(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price_cents=unit_price,
                total_price_cents=line_total,
            ))

        delivery_fee = 0 if request.delivery_method == METHOD_PICKUP else (store.delivery_fee_cents or 0)
        tax = compute_tax_cents(subtotal)
        total = subtotal + delivery_fee + tax - request.discount_amount_cents
        if total < 0:
            raise ValidationError(
                "Discount exceeds order total",
                details={"discount_amount_cents": request.discount_amount_cents},
            )

        # First write of the transaction
        order_number = next_order_number()

        order = Order(
            order_number=order_number,
            user_id=request.user_id,
            store_id=store.id,
            status=ORDER_PENDING,
            delivery_method=request.delivery_method,
            delivery_address=request.delivery_address.strip(),
            subtotal_cents=subtotal,
            delivery_fee_cents=delivery_fee,
            tax_amount_cents=tax,
            discount_amount_cents=request.discount_amount_cents,
            total_amount_cents=total,
        )
        order.items = items
        db.session.add(order)
        db.session.flush()

        for item in order.items:
            slices = reserve_for_product(item.product_id, item.quantity, store.id, commit=False)
            for s in slices:
                item.allocations.append(StockAllocation(
                    inventory_id=s.inventory_id,
                    quantity=s.quantity,
                    status=ALLOCATION_RESERVED,
                ))

        db.session.commit()
        current_app.logger.info(
            "Created order %s (store=%s, total_cents=%s)", order.order_number, store.id, total
        )
        return order

    return _guarded(_op, "create order")


# =============================================================================
# Transitions
# =============================================================================

def _release_allocations(order: Order) -> list[dict]:
    """
    Put an order's stock back, per allocation.

    Reserved slices are released; committed (sold) slices are returned to
    available. A failed slice leaves its counters untouched and is reported.
    """
    failures = []
    for item in order.items:
        for allocation in item.allocations:
            try:
                if allocation.status == ALLOCATION_RESERVED:
                    release(allocation.inventory_id, allocation.quantity, commit=False)
                    allocation.status = ALLOCATION_RELEASED
                elif allocation.status == ALLOCATION_COMMITTED:
                    return_to_stock(allocation.inventory_id, allocation.quantity, commit=False)
                    allocation.status = ALLOCATION_RETURNED
            except MarketplaceError as exc:
                current_app.logger.error(
                    "Failed to release stock for order %s (allocation=%s, inventory=%s): %s",
                    order.order_number, allocation.id, allocation.inventory_id, exc.message,
                )
                failures.append({
                    "allocation_id": allocation.id,
                    "order_item_id": item.id,
                    "inventory_id": allocation.inventory_id,
                    "quantity": allocation.quantity,
                    "error": exc.kind,
                    "message": exc.message,
                })
    return failures


def transition_locked(
    order: Order,
    new_status: str,
    *,
    driver_id: int | None = None,
    cancellation_reason: str | None = None,
) -> list[dict]:
    """Validate and apply a transition to a locked order. Does not commit."""
    validate_transition(order.status, new_status)

    now = utcnow()
    failures: list[dict] = []

    if new_status == ORDER_CONFIRMED:
        order.confirmed_at = now
    elif new_status == ORDER_PREPARING:
        order.prepared_at = now
    elif new_status == ORDER_IN_TRANSIT:
        if driver_id is None:
            raise ValidationError("driver_id is required to move an order in transit")
        driver = find_user(driver_id)
        if not driver.is_driver:
            raise ValidationError(
                "Assigned user is not a driver",
                details={"driver_id": driver_id, "role": driver.role},
            )
        order.driver_id = driver_id
        order.picked_up_at = now
    elif new_status == ORDER_DELIVERED:
        order.delivered_at = now
    elif new_status == ORDER_CANCELLED:
        order.cancelled_at = now
        order.cancellation_reason = cancellation_reason
        failures = _release_allocations(order)

    order.status = new_status
    return failures


def apply_confirmation(order: Order) -> Order:
    """
    Turn a locked PENDING order's reservations into sales and mark it CONFIRMED.

    Does not commit; any InvalidConfirm aborts the caller's transaction.
    """
    if order.status != ORDER_PENDING:
        raise InvalidState(
            "Order can only be confirmed from pending status",
            details={"order_id": order.id, "status": order.status},
        )
    for item in order.items:
        for allocation in item.allocations:
            if allocation.status != ALLOCATION_RESERVED:
                continue
            confirm_sale(allocation.inventory_id, allocation.quantity, commit=False)
            allocation.status = ALLOCATION_COMMITTED
    transition_locked(order, ORDER_CONFIRMED)
    return order


def confirm_order(order_id: int) -> Order:
    def _op() -> Order:
        order = lock_order(order_id)
        apply_confirmation(order)
        db.session.commit()
        current_app.logger.info("Confirmed order %s", order.order_number)
        return order

    return _guarded(_op, "confirm order")


def _notify_ready_for_pickup(order_id: int) -> None:
    if not current_app.config.get("DISPATCH_ON_READY_FOR_PICKUP", True):
        return
    from .listeners import on_order_ready_for_pickup
    on_order_ready_for_pickup(order_id)


def update_status(
    order_id: int,
    new_status: str,
    driver_id: int | None = None,
    cancellation_reason: str | None = None,
) -> Order:
    """
    Move an order along the status machine.

    Reaching READY_FOR_PICKUP runs the delivery dispatch listener after the
    transition has committed; dispatch failures never undo the transition.
    """
    def _op() -> Order:
        order = lock_order(order_id)
        transition_locked(
            order,
            new_status,
            driver_id=driver_id,
            cancellation_reason=cancellation_reason,
        )
        db.session.commit()
        return order

    order = _guarded(_op, "update order status")
    current_app.logger.info("Order %s moved to %s", order.order_number, new_status)

    if new_status == ORDER_READY_FOR_PICKUP:
        _notify_ready_for_pickup(order.id)
        db.session.refresh(order)
    return order


def cancel_order(order_id: int, reason: str | None = None) -> CancellationResult:
    def _op() -> CancellationResult:
        order = lock_order(order_id)
        if order.status in (ORDER_DELIVERED, ORDER_CANCELLED):
            raise InvalidState(
                "Cannot cancel this order",
                details={"order_id": order_id, "status": order.status},
            )
        failures = transition_locked(order, ORDER_CANCELLED, cancellation_reason=reason)
        db.session.commit()
        return CancellationResult(order=order, failed_releases=failures)

    result = _guarded(_op, "cancel order")
    if result.failed_releases:
        current_app.logger.warning(
            "Order %s cancelled with %d unreleased allocation(s)",
            result.order.order_number, len(result.failed_releases),
        )
    else:
        current_app.logger.info("Cancelled order %s", result.order.order_number)
    return result


def remove_order(order_id: int) -> None:
    """
    Delete a finished order with its items and allocations.

    Only CANCELLED or DELIVERED orders, and only once no delivery or
    payment record still refers to them.
    """
    def _op() -> None:
        order = lock_order(order_id)
        if order.status not in (ORDER_CANCELLED, ORDER_DELIVERED):
            raise InvalidState(
                "Can only delete cancelled or delivered orders",
                details={"order_id": order_id, "status": order.status},
            )
        if db.session.query(Delivery.id).filter_by(order_id=order_id).first():
            raise InvalidState("Order still has a delivery record", details={"order_id": order_id})
        if db.session.query(Payment.id).filter_by(order_id=order_id).first():
            raise InvalidState("Order still has payment records", details={"order_id": order_id})
        db.session.delete(order)
        db.session.commit()

    _guarded(_op, "remove order")


# =============================================================================
# Queries
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFound(f"Order with ID {order_id} not found", details={"order_id": order_id})
    return order


def _paginate(query, page: int, limit: int) -> dict:
    if page < 1:
        raise ValidationError("page must be >= 1", details={"page": page})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"limit": limit})

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "orders": orders,
        "total": total,
        "pages": math.ceil(total / limit),
    }


def _filtered(status: str | None):
    query = db.session.query(Order)
    if status is not None:
        if status not in VALID_ORDER_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"status": status})
        query = query.filter(Order.status == status)
    return query


def list_orders(page: int = 1, limit: int = 20, status: str | None = None, store_id: int | None = None) -> dict:
    query = _filtered(status)
    if store_id is not None:
        query = query.filter(Order.store_id == store_id)
    return _paginate(query, page, limit)


def list_orders_for_user(user_id: int, page: int = 1, limit: int = 20, status: str | None = None) -> dict:
    return _paginate(_filtered(status).filter(Order.user_id == user_id), page, limit)


def list_orders_for_store(store_id: int, page: int = 1, limit: int = 20, status: str | None = None) -> dict:
    return _paginate(_filtered(status).filter(Order.store_id == store_id), page, limit)


def rate_order(order_id: int, user_id: int, rating: int, review: str | None = None) -> Order:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer between 1 and 5", details={"rating": rating})

    def _op() -> Order:
        order = lock_order(order_id)
        if order.user_id != user_id:
            raise ValidationError(
                "You can only rate your own orders",
                details={"order_id": order_id, "user_id": user_id},
            )
        if order.status != ORDER_DELIVERED:
            raise InvalidState(
                "You can only rate delivered orders",
                details={"order_id": order_id, "status": order.status},
            )
        order.rating = rating
        order.review = review
        db.session.commit()
        return order

    return _guarded(_op, "rate order")


def get_order_stats(store_id: int | None = None) -> dict:
    query = db.session.query(Order.status, func.count(Order.id)).group_by(Order.status)
    revenue_query = db.session.query(func.coalesce(func.sum(Order.total_amount_cents), 0)).filter(
        Order.status == ORDER_DELIVERED
    )
    if store_id is not None:
        query = query.filter(Order.store_id == store_id)
        revenue_query = revenue_query.filter(Order.store_id == store_id)

    by_status = {status: 0 for status in VALID_ORDER_STATUSES}
    for status, count in query.all():
        by_status[status] = count
    total = sum(by_status.values())

    delivered = by_status[ORDER_DELIVERED]
    cancelled = by_status[ORDER_CANCELLED]
    return {
        "total_orders": total,
        "by_status": by_status,
        "pending_orders": by_status[ORDER_PENDING],
        "confirmed_orders": by_status[ORDER_CONFIRMED],
        "delivered_orders": delivered,
        "cancelled_orders": cancelled,
        "total_revenue_cents": int(revenue_query.scalar() or 0),
        "completion_rate": (delivered / total) * 100 if total else 0,
        "cancellation_rate": (cancelled / total) * 100 if total else 0,
    }
