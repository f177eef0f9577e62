import logging

import pytest

from notifier import NotificationResult
from tests.conftest import OTHER_OWNER, OWNER, make_customer, make_item


@pytest.fixture
def filled_cart(cart):
    cart.add_or_update_item(make_item("a1", price=10.0, quantity=2), OWNER)
    cart.add_or_update_item(make_item("a2", price=30.0, quantity=1,
                                      specs={"type": "rgb", "size": "300x800", "thickness": "4mm"}), OWNER)
    cart.add_or_update_item(make_item("b1", price=99.0), OTHER_OWNER)
    return cart


def place(orders, items=None, owner=OWNER, **pricing):
    items = items if items is not None else [{"cartItemId": "a1"}, {"cartItemId": "a2"}]
    return orders.create_order(owner, items, pricing, make_customer())


def order_count(database):
    return database.collection("order").count_documents({})


def test_create_order_snapshots_cart_items(filled_cart, orders, dispatcher):
    result = place(orders, shipping=5.0, tax=1.5)
    dispatcher.join()

    assert result.success
    assert result.status_code == 201
    order = result.data
    assert order["id"]
    assert order["owner"] == OWNER
    assert order["status"] == "pending"
    assert order["paymentStatus"] == "pending"
    assert order["currency"] == "USD"
    assert order["subtotal"] == 50.0
    assert order["total"] == 56.5
    first, second = order["items"]
    assert first == {
        "cartItemId": "a1",
        "name": "Custom Mousepad",
        "quantity": 2,
        "price": 10.0,
        "currency": "USD",
        "finalImage": make_item("a1")["finalImage"],
        "originalImageUrl": make_item("a1")["originalImageUrl"],
        "mousepadType": "normal",
        "mousepadSize": "400x900",
        "thickness": "3mm",
    }
    assert second["mousepadType"] == "rgb"
    assert order["customerInfo"]["address"]["city"] == "Singapore"
    assert "notes" not in order


def test_create_order_ignores_tampered_request_values(filled_cart, orders):
    items = [{"cartItemId": "a1", "price": 0.01, "name": "Free pad"}]

    result = place(orders, items, subtotal=0.01, total=0.01)

    line = result.data["items"][0]
    assert line["price"] == 10.0
    assert line["name"] == "Custom Mousepad"
    assert result.data["subtotal"] == 20.0
    assert result.data["total"] == 20.0


def test_mismatched_client_pricing_is_logged(filled_cart, orders, caplog):
    with caplog.at_level(logging.WARNING, logger="mousepad.orders"):
        result = place(orders, [{"cartItemId": "a1"}], shipping=5.0, total=1.0, currency="SGD")

    assert result.data["total"] == 25.0
    assert result.data["currency"] == "USD"
    messages = [record.getMessage() for record in caplog.records]
    assert any("total from request (1.0) differs from computed total (25.0)" in m for m in messages)
    assert any("currency from request (SGD) differs from cart (USD)" in m for m in messages)


def test_matching_client_pricing_is_not_logged(filled_cart, orders, caplog):
    with caplog.at_level(logging.WARNING, logger="mousepad.orders"):
        place(orders, [{"cartItemId": "a1"}], subtotal=20.0, shipping=5.0, total=25.0, currency="USD")

    assert not [r for r in caplog.records if r.name == "mousepad.orders"]


def test_requested_quantity_overrides_cart_quantity(filled_cart, orders):
    result = place(orders, [{"cartItemId": "a1", "quantity": 5}])

    assert result.data["items"][0]["quantity"] == 5
    assert result.data["subtotal"] == 50.0


def test_foreign_cart_item_rejects_whole_order(filled_cart, orders, database):
    result = place(orders, [{"cartItemId": "a1"}, {"cartItemId": "b1"}])

    assert not result.success
    assert result.status_code == 400
    assert "items do not belong to owner" in result.error
    assert order_count(database) == 0


def test_unknown_cart_item_rejects_order(filled_cart, orders, database):
    assert place(orders, [{"cartItemId": "ghost"}]).status_code == 400
    assert order_count(database) == 0


def test_empty_items_are_rejected(filled_cart, orders, database):
    assert place(orders, []).status_code == 400
    assert order_count(database) == 0


def test_duplicate_cart_item_ids_are_rejected(filled_cart, orders):
    assert place(orders, [{"cartItemId": "a1"}, {"cartItemId": "a1"}]).status_code == 400


def test_invalid_customer_info_is_rejected(filled_cart, orders):
    result = orders.create_order(OWNER, [{"cartItemId": "a1"}], {}, make_customer(email="nope"))

    assert result.status_code == 400
    assert "customerInfo.email" in result.error


def test_mixed_currency_order_is_rejected(cart, orders):
    cart.add_or_update_item(make_item("usd", currency="USD"), OWNER)
    cart.add_or_update_item(make_item("sgd", currency="SGD"), OWNER)

    result = place(orders, [{"cartItemId": "usd"}, {"cartItemId": "sgd"}])

    assert result.status_code == 400


def test_order_survives_cart_item_deletion(filled_cart, orders):
    order = place(orders).data
    filled_cart.clear_cart(OWNER)

    fetched = orders.get_order(order["id"], OWNER)

    assert fetched.success
    assert [line["cartItemId"] for line in fetched.data["items"]] == ["a1", "a2"]
    assert fetched.data["items"][0]["price"] == 10.0


def test_create_order_sends_notification(filled_cart, orders, notifier, dispatcher):
    order = place(orders).data
    dispatcher.join()

    assert len(notifier.sent) == 1
    assert notifier.sent[0]["id"] == order["id"]


def test_notifier_failure_does_not_fail_order(filled_cart, orders, notifier, dispatcher, database):
    notifier.result = NotificationResult(success=False, error="Email API timed out", retryable=True, timed_out=True)

    result = place(orders)
    dispatcher.join()

    assert result.success
    assert order_count(database) == 1
    assert len(notifier.sent) == 2


def test_notifier_exception_does_not_fail_order(filled_cart, orders, notifier, dispatcher):
    def explode(order):
        raise RuntimeError("smtp down")

    notifier.send_order_confirmation = explode

    result = place(orders)
    dispatcher.join()

    assert result.success


def test_get_order_checks_ownership(filled_cart, orders):
    order = place(orders).data

    assert orders.get_order(order["id"], OTHER_OWNER).status_code == 403
    assert orders.get_order(order["id"], OTHER_OWNER, is_admin=True).success


def test_get_order_unknown_or_malformed_id(orders):
    assert orders.get_order("65f0c0ffee0000000000beef", OWNER).status_code == 404
    assert orders.get_order("not-an-id", OWNER).status_code == 404


def test_list_orders_is_scoped_to_owner(filled_cart, orders):
    place(orders)
    place(orders, [{"cartItemId": "a1"}])
    place(orders, [{"cartItemId": "b1"}], owner=OTHER_OWNER)

    result = orders.list_orders(OWNER)

    assert result.count == 2
    assert {o["owner"] for o in result.data} == {OWNER}


@pytest.mark.parametrize("payment_status, order_status", [
    ("completed", "processing"),
    ("failed", "paymentFailed"),
    ("processing", "pending"),
    ("refunded", "pending"),
    ("pending", "pending"),
])
def test_payment_status_transitions(filled_cart, orders, payment_status, order_status):
    order = place(orders).data

    result = orders.update_payment_status(order["id"], OWNER, payment_status, transaction_id="tx-1")

    assert result.success
    assert result.data["paymentStatus"] == payment_status
    assert result.data["status"] == order_status
    assert result.data["paymentTransactionId"] == "tx-1"


def test_payment_status_notifies_only_on_completion(filled_cart, orders, notifier, dispatcher):
    order = place(orders).data
    dispatcher.join()
    notifier.sent.clear()

    orders.update_payment_status(order["id"], OWNER, "failed")
    dispatcher.join()
    assert notifier.sent == []

    orders.update_payment_status(order["id"], OWNER, "completed")
    dispatcher.join()
    assert len(notifier.sent) == 1
    assert notifier.sent[0]["status"] == "processing"


def test_payment_status_can_notify_on_every_change(filled_cart, orders, notifier, dispatcher):
    orders.settings.notify_on_any_payment_status = True
    order = place(orders).data
    dispatcher.join()
    notifier.sent.clear()

    orders.update_payment_status(order["id"], OWNER, "refunded")
    dispatcher.join()

    assert len(notifier.sent) == 1


def test_payment_status_requires_ownership(filled_cart, orders):
    order = place(orders).data

    assert orders.update_payment_status(order["id"], OTHER_OWNER, "completed").status_code == 403
    assert orders.update_payment_status(order["id"], None, "completed", is_admin=True).success


def test_payment_status_rejects_unknown_value(filled_cart, orders):
    order = place(orders).data

    assert orders.update_payment_status(order["id"], OWNER, "paid").status_code == 400
