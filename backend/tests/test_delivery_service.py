import json
from datetime import timedelta

import pytest

from marketplace.errors import (
    DuplicateDelivery,
    InvalidState,
    InvalidTransition,
    LocationUnavailable,
    NoDriverAvailable,
    PaymentNotVerified,
    RouteUnavailable,
)
from marketplace.models import Delivery
from marketplace.models.deliveries import (
    DELIVERY_ASSIGNED,
    DELIVERY_CANCELLED,
    DELIVERY_DELIVERED,
    DELIVERY_IN_TRANSIT,
    DELIVERY_PICKED_UP,
    VALID_DELIVERY_STATUSES,
)
from marketplace.models.orders import (
    METHOD_STANDARD,
    ORDER_DELIVERED,
    ORDER_IN_TRANSIT,
    ORDER_PREPARING,
    ORDER_READY_FOR_PICKUP,
)
from marketplace.services import delivery_service, order_service, payment_service
from marketplace.services.delivery_service import DELIVERY_TRANSITIONS
from marketplace.services.order_service import CreateOrderRequest, OrderLineRequest
from marketplace.time_utils import utcnow


def _ready_order(app, customer, store, product, paid=True, reference="PAY-1"):
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Ngong Road, Nairobi",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
        delivery_method=METHOD_STANDARD,
    ))
    if paid:
        payment_service.create_payment(order_id=order.id, amount_cents=order.total_amount_cents, reference=reference)
        payment_service.verify_payment(reference, success=True)
    else:
        order_service.confirm_order(order.id)

    app.config["DISPATCH_ON_READY_FOR_PICKUP"] = False
    try:
        order_service.update_status(order.id, ORDER_PREPARING)
        order_service.update_status(order.id, ORDER_READY_FOR_PICKUP)
    finally:
        app.config["DISPATCH_ON_READY_FOR_PICKUP"] = True
    return order


@pytest.fixture
def stocked(build, store, product):
    return build.inventory(store, [product], available=20)


def test_workflow_assigns_nearest_driver(app, build, geo, customer, store, product, stocked, driver):
    build.driver("far@example.com", 0.0, 5.0)
    order = _ready_order(app, customer, store, product)
    before = utcnow()

    result = delivery_service.create_delivery_workflow(order.id)

    delivery = result.delivery
    assert result.duplicate is False
    assert delivery.driver_id == driver.id
    assert delivery.delivery_status == DELIVERY_ASSIGNED
    assert delivery.route_distance_m == 5230
    assert delivery.route_duration_s == 610
    assert json.loads(delivery.route_coordinates) == geo.route_info.coordinates
    assert delivery.delivery_fee_cents == order_service.get_order(order.id).delivery_fee_cents
    assert result.route["distance"] == "5.23 km"
    assert result.route["duration"] == "11 minutes"
    assert result.driver == {"id": driver.id, "name": "Dan Test", "phone": "+254711111111"}
    assert before + timedelta(minutes=11) <= result.estimated_delivery_time
    assert result.estimated_delivery_time <= utcnow() + timedelta(minutes=11)

    order = order_service.get_order(order.id)
    assert order.status == ORDER_IN_TRANSIT
    assert order.driver_id == driver.id
    assert order.picked_up_at is not None


def test_workflow_is_idempotent(app, db_session, geo, customer, store, product, stocked, driver):
    order = _ready_order(app, customer, store, product)

    first = delivery_service.create_delivery_workflow(order.id)
    second = delivery_service.create_delivery_workflow(order.id)

    assert second.duplicate is True
    assert second.delivery.id == first.delivery.id
    assert db_session.query(Delivery).filter_by(order_id=order.id).count() == 1
    assert len(geo.route_calls) == 1

    with pytest.raises(DuplicateDelivery):
        delivery_service.create_delivery_workflow(order.id, strict=True)


def test_unpaid_order_is_rejected(app, db_session, geo, customer, store, product, stocked, driver):
    order = _ready_order(app, customer, store, product, paid=False)

    with pytest.raises(PaymentNotVerified):
        delivery_service.create_delivery_workflow(order.id)

    assert db_session.query(Delivery).count() == 0
    assert order_service.get_order(order.id).status == ORDER_READY_FOR_PICKUP


def test_no_driver(app, db_session, geo, customer, store, product, stocked):
    order = _ready_order(app, customer, store, product)

    with pytest.raises(NoDriverAvailable):
        delivery_service.create_delivery_workflow(order.id)
    assert db_session.query(Delivery).count() == 0


def test_customer_location_unavailable(app, build, db_session, geo, store, product, stocked, driver):
    nomad = build.user("nomad@example.com", with_address=False)
    order = _ready_order(app, nomad, store, product)

    with pytest.raises(LocationUnavailable):
        delivery_service.create_delivery_workflow(order.id)
    assert db_session.query(Delivery).count() == 0


def test_route_unavailable(app, db_session, geo, customer, store, product, stocked, driver):
    order = _ready_order(app, customer, store, product)
    geo.route_info = None

    with pytest.raises(RouteUnavailable):
        delivery_service.create_delivery_workflow(order.id)
    assert db_session.query(Delivery).count() == 0
    assert order_service.get_order(order.id).status == ORDER_READY_FOR_PICKUP


def test_order_not_ready_fails_transition(app, db_session, geo, customer, store, product, stocked, driver):
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Ngong Road",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
    ))
    payment_service.create_payment(order_id=order.id, amount_cents=order.total_amount_cents, reference="EARLY")
    payment_service.verify_payment("EARLY", success=True)

    with pytest.raises(InvalidTransition):
        delivery_service.create_delivery_workflow(order.id)
    assert db_session.query(Delivery).count() == 0


def test_ready_for_pickup_dispatches_and_records_outcome(app, geo, customer, store, product, stocked, driver):
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Ngong Road",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
    ))
    payment = payment_service.create_payment(order_id=order.id, amount_cents=order.total_amount_cents, reference="AUTO")
    payment_service.verify_payment("AUTO", success=True)
    order_service.update_status(order.id, ORDER_PREPARING)

    order = order_service.update_status(order.id, ORDER_READY_FOR_PICKUP)

    assert order.status == ORDER_IN_TRANSIT
    details = delivery_service.get_delivery_details(order.id)
    payment = payment_service.verify_payment("AUTO", success=True).payment
    assert payment.delivery_initiated is True
    assert payment.delivery_reference == details["delivery_id"]


def test_ready_for_pickup_dispatch_failure_keeps_transition(app, geo, customer, store, product, stocked):
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Ngong Road",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
    ))
    payment_service.create_payment(order_id=order.id, amount_cents=order.total_amount_cents, reference="NODRV")
    payment_service.verify_payment("NODRV", success=True)
    order_service.update_status(order.id, ORDER_PREPARING)

    order = order_service.update_status(order.id, ORDER_READY_FOR_PICKUP)

    assert order.status == ORDER_READY_FOR_PICKUP
    payment = payment_service.verify_payment("NODRV", success=True).payment
    assert payment.delivery_initiated is False
    assert "No available driver" in payment.delivery_error


def test_delivery_status_walk_completes_order(app, geo, customer, store, product, stocked, driver):
    order = _ready_order(app, customer, store, product)
    delivery = delivery_service.create_delivery_workflow(order.id).delivery

    with pytest.raises(InvalidTransition):
        delivery_service.update_delivery_status(delivery.id, DELIVERY_DELIVERED)

    delivery_service.update_delivery_status(delivery.id, DELIVERY_PICKED_UP)
    delivery_service.update_delivery_status(delivery.id, DELIVERY_IN_TRANSIT)
    delivery = delivery_service.update_delivery_status(delivery.id, DELIVERY_DELIVERED)

    assert delivery.delivered_at is not None
    order = order_service.get_order(order.id)
    assert order.status == ORDER_DELIVERED
    assert order.delivered_at == delivery.delivered_at

    with pytest.raises(InvalidTransition):
        delivery_service.update_delivery_status(delivery.id, DELIVERY_CANCELLED)


UNLISTED_DELIVERY_TRANSITIONS = [
    (source, target)
    for source in VALID_DELIVERY_STATUSES
    for target in VALID_DELIVERY_STATUSES
    if target not in DELIVERY_TRANSITIONS[source]
]


@pytest.mark.parametrize("source,target", UNLISTED_DELIVERY_TRANSITIONS)
def test_unlisted_delivery_transitions_are_rejected(db_session, customer, store, product, stocked, driver, source, target):
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Ngong Road, Nairobi",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
    ))
    delivery = Delivery(
        order_id=order.id,
        driver_id=driver.id,
        user_id=customer.id,
        store_id=store.id,
        delivery_address=order.delivery_address,
        delivery_status=source,
    )
    db_session.add(delivery)
    db_session.commit()

    with pytest.raises(InvalidTransition):
        delivery_service.update_delivery_status(delivery.id, target)

    assert delivery_service.get_delivery(delivery.id).delivery_status == source


def test_details_listing_and_removal(app, geo, customer, store, product, stocked, driver):
    order = _ready_order(app, customer, store, product)
    delivery = delivery_service.create_delivery_workflow(order.id).delivery

    details = delivery_service.get_delivery_details(order.id)
    assert details["driver"]["id"] == driver.id
    assert details["customer"] == {"id": customer.id, "name": "Carol Test", "phone": "+254700000000"}
    assert details["route"]["coordinates"] == geo.route_info.coordinates
    assert [d.id for d in delivery_service.list_deliveries(driver_id=driver.id)] == [delivery.id]

    with pytest.raises(InvalidState):
        delivery_service.remove_delivery(delivery.id)

    delivery_service.update_delivery_status(delivery.id, DELIVERY_CANCELLED)
    delivery_service.remove_delivery(delivery.id)
    assert delivery_service.list_deliveries() == []
