from decimal import Decimal

from cart import CartLine


def test_cart_is_created_lazily_and_merges_lines(client, customer, make_product):
    lamp = make_product(price="19.99", stock_quantity=7)

    empty = client.get("/cart", headers=customer.headers).json()
    assert empty["items"] == []
    assert empty["cartId"] is not None

    client.post("/cart", json={"productId": lamp["id"], "quantity": 1}, headers=customer.headers)
    client.post("/cart", json={"productId": lamp["id"], "quantity": 2}, headers=customer.headers)

    cart = client.get("/cart", headers=customer.headers).json()
    assert cart["cartId"] == empty["cartId"]
    assert cart["totalItems"] == 3
    (item,) = cart["items"]
    assert item["productId"] == lamp["id"]
    assert item["quantity"] == 3
    assert item["price"] == 19.99
    assert item["stockQuantity"] == 7
    assert item["images"][0].startswith("/api/placeholder/")


def test_update_and_remove_lines(client, customer, make_product):
    lamp = make_product()
    chair = make_product(title="Chair")
    for product in (lamp, chair):
        client.post("/cart", json={"productId": product["id"]}, headers=customer.headers)

    client.patch("/cart", json={"productId": lamp["id"], "quantity": 4}, headers=customer.headers)
    client.patch("/cart", json={"productId": chair["id"], "quantity": 0}, headers=customer.headers)

    items = client.get("/cart", headers=customer.headers).json()["items"]
    assert [(i["productId"], i["quantity"]) for i in items] == [(lamp["id"], 4)]

    resp = client.delete(f"/cart/items/{lamp['id']}", headers=customer.headers)
    assert resp.json()["success"] is True
    assert client.get("/cart", headers=customer.headers).json()["items"] == []


def test_clear_cart(client, customer, make_product):
    lamp = make_product()
    client.post("/cart", json={"productId": lamp["id"], "quantity": 2}, headers=customer.headers)

    client.delete("/cart", headers=customer.headers)

    assert client.get("/cart", headers=customer.headers).json()["totalItems"] == 0


def test_adding_unknown_product(client, customer):
    resp = client.post("/cart", json={"productId": 8080, "quantity": 1}, headers=customer.headers)
    assert resp.status_code == 404


def test_cart_requires_authentication(client):
    assert client.get("/cart").status_code == 401
    assert client.get("/cart/snapshot").status_code == 401
    assert client.post("/cart", json={"productId": 1}).status_code == 401


def test_snapshot_uses_current_stored_prices(client, services, admin, customer, make_product):
    lamp = make_product(price="10.00")
    chair = make_product(title="Chair", price="45.50")
    services.cart.add_item(customer.id, lamp["id"], 2)
    services.cart.add_item(customer.id, chair["id"], 1)
    client.put(f"/products/{lamp['id']}", json={"price": "12.00"}, headers=admin.headers)

    assert services.cart.snapshot(customer.id) == [
        CartLine(lamp["id"], 2, Decimal("12.00")),
        CartLine(chair["id"], 1, Decimal("45.50")),
    ]
    body = client.get("/cart/snapshot", headers=customer.headers).json()
    assert body["items"][0] == {"productId": lamp["id"], "quantity": 2, "unitPrice": 12.0}


def test_snapshot_without_a_cart_is_empty(services, customer):
    assert services.cart.snapshot(customer.id) == []
    # reading does not create a cart
    with services.db.connect() as conn:
        assert services.cart._cart_id(conn, customer.id) is None


def test_carts_are_per_user(services, customer, other_customer, make_product):
    lamp = make_product()
    services.cart.add_item(customer.id, lamp["id"], 1)

    assert services.cart.snapshot(other_customer.id) == []
    services.cart.clear(other_customer.id)
    assert len(services.cart.snapshot(customer.id)) == 1
