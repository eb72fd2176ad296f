import re
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import select

from checkout import LineItem, generate_order_number
from database import order_items, orders
from errors import EmptyCart, InsufficientStock, ProductNotFound, ValidationError


def test_checkout_creates_order_at_stored_price(client, customer, make_product, stock_of, place):
    lamp = make_product(price="19.99", stock_quantity=5)

    resp = place(customer, [{"productId": lamp["id"], "quantity": 2, "price": "1.00"}], total="39.98")

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["orderNumber"].startswith("TST-")
    assert stock_of(lamp["id"]) == 3

    order = client.get(f"/orders/{body['orderId']}", headers=customer.headers).json()["order"]
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["total_amount"] == 39.98
    assert order["items"] == [
        {
            "id": order["items"][0]["id"],
            "product_id": lamp["id"],
            "title": "Desk Lamp",
            "quantity": 2,
            "unit_price": 19.99,
            "total_price": 39.98,
        }
    ]


def test_stored_total_is_the_supplied_value(client, customer, make_product, place):
    lamp = make_product(price="5.00")

    resp = place(customer, [{"productId": lamp["id"], "quantity": 1}], total="7.50")

    order = client.get(f"/orders/{resp.json()['orderId']}", headers=customer.headers).json()["order"]
    assert order["total_amount"] == 7.5
    assert order["items"][0]["total_price"] == 5.0


def test_order_items_do_not_follow_later_price_changes(client, admin, customer, make_product, place):
    lamp = make_product(price="10.00")
    order_id = place(customer, [{"productId": lamp["id"], "quantity": 3}], total="30.00").json()["orderId"]

    client.put(f"/products/{lamp['id']}", json={"price": "99.00"}, headers=admin.headers)

    item = client.get(f"/orders/{order_id}", headers=customer.headers).json()["order"]["items"][0]
    assert item["unit_price"] == 10.0
    assert item["total_price"] == 30.0


def test_insufficient_stock_rolls_back_everything(client, customer, make_product, stock_of, count_rows, place):
    plenty = make_product(title="Plenty", stock_quantity=5)
    scarce = make_product(title="Scarce", stock_quantity=1)
    client.post("/cart", json={"productId": plenty["id"], "quantity": 2}, headers=customer.headers)

    resp = place(
        customer,
        [{"productId": plenty["id"], "quantity": 2}, {"productId": scarce["id"], "quantity": 3}],
    )

    assert resp.status_code == 400
    assert resp.json()["detail"] == f"Insufficient stock for product {scarce['id']}"
    assert count_rows("orders") == 0
    assert count_rows("order_items") == 0
    assert stock_of(plenty["id"]) == 5
    assert stock_of(scarce["id"]) == 1
    assert count_rows("cart_items") == 1


def test_unknown_product_fails_whole_order(customer, make_product, stock_of, count_rows, place):
    lamp = make_product(stock_quantity=4)

    resp = place(customer, [{"productId": lamp["id"], "quantity": 1}, {"productId": 9999, "quantity": 1}])

    assert resp.status_code == 404
    assert "9999" in resp.json()["detail"]
    assert count_rows("orders") == 0
    assert stock_of(lamp["id"]) == 4


def test_selling_out_then_rejecting_the_next_order(customer, make_product, stock_of, count_rows, place):
    product = make_product(stock_quantity=3)

    first = place(customer, [{"productId": product["id"], "quantity": 3}])
    second = place(customer, [{"productId": product["id"], "quantity": 1}])

    assert first.status_code == 201
    assert second.status_code == 400
    assert "Insufficient stock" in second.json()["detail"]
    assert stock_of(product["id"]) == 0
    assert count_rows("orders") == 1


def test_cart_is_emptied_by_successful_checkout(client, customer, make_product, place):
    lamp = make_product()
    client.post("/cart", json={"productId": lamp["id"], "quantity": 1}, headers=customer.headers)

    resp = place(customer, [{"productId": lamp["id"], "quantity": 1}])

    assert resp.status_code == 201
    assert resp.json()["clearCart"] is True
    assert client.get("/cart", headers=customer.headers).json()["items"] == []


def test_checkout_without_items_uses_the_stored_cart(client, customer, make_product, stock_of, place):
    lamp = make_product(price="12.50", stock_quantity=6)
    chair = make_product(title="Chair", price="80.00", stock_quantity=2)
    client.post("/cart", json={"productId": lamp["id"], "quantity": 2}, headers=customer.headers)
    client.post("/cart", json={"productId": chair["id"], "quantity": 1}, headers=customer.headers)

    resp = place(customer, None, total="105.00")

    assert resp.status_code == 201
    assert stock_of(lamp["id"]) == 4
    assert stock_of(chair["id"]) == 1
    order = client.get(f"/orders/{resp.json()['orderId']}", headers=customer.headers).json()["order"]
    assert [(i["product_id"], i["quantity"]) for i in order["items"]] == [(lamp["id"], 2), (chair["id"], 1)]


def test_empty_cart_is_rejected(customer, place):
    resp = place(customer, [])
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"

    resp = place(customer, None)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"


@pytest.mark.parametrize("missing", ["shippingAddress", "paymentMethod", "totalAmount", "email"])
def test_missing_required_fields(customer, make_product, count_rows, place, missing):
    lamp = make_product()
    resp = place(customer, [{"productId": lamp["id"], "quantity": 1}], **{missing: None})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing required fields"
    assert count_rows("orders") == 0


def test_checkout_requires_a_valid_token(client, make_product, shipping):
    lamp = make_product()
    body = {
        "items": [{"productId": lamp["id"], "quantity": 1}],
        "shippingAddress": shipping,
        "paymentMethod": "card",
        "totalAmount": "19.99",
        "email": "jane@example.com",
    }

    assert client.post("/checkout", json=body).status_code == 401
    assert client.post("/checkout", json=body, headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_zero_quantity_is_a_validation_error(customer, make_product, place):
    lamp = make_product()
    resp = place(customer, [{"productId": lamp["id"], "quantity": 0}])
    assert resp.status_code == 400


def test_idempotency_key_replays_the_first_order(customer, make_product, stock_of, count_rows, place):
    lamp = make_product(stock_quantity=5)
    items = [{"productId": lamp["id"], "quantity": 2}]

    first = place(customer, items, headers={"Idempotency-Key": "retry-1"})
    again = place(customer, items, headers={"Idempotency-Key": "retry-1"})

    assert first.status_code == again.status_code == 201
    assert again.json()["orderId"] == first.json()["orderId"]
    assert again.json()["orderNumber"] == first.json()["orderNumber"]
    assert again.json()["replayed"] is True
    assert count_rows("orders") == 1
    assert stock_of(lamp["id"]) == 3


def test_idempotency_keys_are_scoped_per_user(customer, other_customer, make_product, count_rows, place):
    lamp = make_product(stock_quantity=5)
    items = [{"productId": lamp["id"], "quantity": 1}]

    place(customer, items, headers={"Idempotency-Key": "same"})
    resp = place(other_customer, items, headers={"Idempotency-Key": "same"})

    assert resp.json()["replayed"] is False
    assert count_rows("orders") == 2


def test_payment_proof_reference_is_stored(client, customer, make_product, place):
    lamp = make_product()
    resp = place(customer, [{"productId": lamp["id"], "quantity": 1}], bankReceiptUrl="https://cdn.example.com/r.png")

    order = client.get(f"/orders/{resp.json()['orderId']}", headers=customer.headers).json()["order"]
    assert order["payment_verification_url"] == "https://cdn.example.com/r.png"
    assert order["shipping_address"]["city"] == "Springfield"


# Service level

def _place(services, user_id, items, **kwargs):
    return services.checkout.place_order(
        user_id,
        items,
        {"street": "1 Main St"},
        "card",
        Decimal("1.00"),
        "buyer@example.com",
        **kwargs,
    )


def test_service_rejects_empty_and_incomplete_orders(services, customer):
    with pytest.raises(EmptyCart):
        _place(services, customer.id, [])
    with pytest.raises(ValidationError):
        services.checkout.place_order(customer.id, [LineItem(1, 1)], None, "card", Decimal("1"), "a@example.com")


def test_service_errors_identify_the_product(services, customer, make_product):
    lamp = make_product(stock_quantity=1)

    with pytest.raises(InsufficientStock) as exc:
        _place(services, customer.id, [LineItem(lamp["id"], 2)])
    assert exc.value.product_id == lamp["id"]
    assert exc.value.requested == 2
    assert exc.value.available == 1

    with pytest.raises(ProductNotFound) as exc:
        _place(services, customer.id, [LineItem(424242, 1)])
    assert exc.value.product_id == 424242


def test_duplicate_lines_for_one_product_cannot_oversell(services, customer, make_product, stock_of, count_rows):
    lamp = make_product(stock_quantity=3)

    with pytest.raises(InsufficientStock):
        _place(services, customer.id, [LineItem(lamp["id"], 2), LineItem(lamp["id"], 2)])

    assert stock_of(lamp["id"]) == 3
    assert count_rows("orders") == 0


def test_connections_are_returned_after_failed_checkouts(services, customer, make_product):
    lamp = make_product(stock_quantity=1)

    for _ in range(5):
        with pytest.raises(InsufficientStock):
            _place(services, customer.id, [LineItem(lamp["id"], 5)])
    with pytest.raises(ProductNotFound):
        _place(services, customer.id, [LineItem(777, 1)])

    assert services.db.engine.pool.checkedout() == 0


def test_concurrent_checkouts_never_oversell(services, customer, make_product, stock_of):
    workers, per_order = 8, 2
    lamp = make_product(stock_quantity=workers * per_order)

    def buy(_):
        try:
            _place(services, customer.id, [LineItem(lamp["id"], per_order)])
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(buy, range(workers)))

    assert all(results)
    assert stock_of(lamp["id"]) == 0


def test_oversubscribed_concurrent_checkouts_stop_at_zero(services, customer, make_product, stock_of):
    lamp = make_product(stock_quantity=6)

    def buy(_):
        try:
            _place(services, customer.id, [LineItem(lamp["id"], 2)])
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(buy, range(6)))

    assert results.count(True) == 3
    assert stock_of(lamp["id"]) == 0
    with services.db.connect() as conn:
        sold = conn.execute(select(order_items.c.quantity)).scalars().all()
        placed = conn.execute(select(orders.c.id)).scalars().all()
    assert sum(sold) == 6
    assert len(placed) == 3


def test_order_numbers_are_prefixed_and_random():
    first, second = generate_order_number("DVZ"), generate_order_number("DVZ")
    assert re.fullmatch(r"DVZ-\d{13}-[A-Z0-9]{9}", first)
    assert first != second
