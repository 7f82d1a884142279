import json

from marketplace.services import order_service
from marketplace.services.order_service import CreateOrderRequest, OrderLineRequest


def test_inventory_commands(app, build, store, product):
    build.inventory(store, [product], available=0, name="Empty shelf")
    build.inventory(store, [product], available=40, name="Full shelf")
    runner = app.test_cli_runner()

    result = runner.invoke(args=["inventory", "out-of-stock", "--store-id", str(store.id)])
    assert result.exit_code == 0
    assert "Empty shelf" in result.output
    assert "Full shelf" not in result.output

    result = runner.invoke(args=["inventory", "stats"])
    assert result.exit_code == 0
    assert json.loads(result.output)["out_of_stock_items"] == 1


def test_orders_cancel_command(app, build, customer, store, product):
    build.inventory(store, [product], available=3)
    order = order_service.create_order(CreateOrderRequest(
        user_id=customer.id,
        store_id=store.id,
        delivery_address="Counter",
        items=[OrderLineRequest(product_id=product.id, quantity=1)],
        delivery_method="pickup",
    ))
    runner = app.test_cli_runner()

    result = runner.invoke(args=["orders", "cancel", str(order.id), "--reason", "Duplicate"])
    assert result.exit_code == 0
    assert f"Cancelled order {order.order_number}" in result.output

    result = runner.invoke(args=["orders", "cancel", str(order.id)])
    assert result.exit_code != 0
    assert "invalid_state" in result.output


def test_dispatch_unknown_order_reports_error(app, db_session, geo):
    result = app.test_cli_runner().invoke(args=["deliveries", "dispatch", "404"])

    assert result.exit_code != 0
    assert "payment_not_verified" in result.output
