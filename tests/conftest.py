from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from database import cart_items, order_items, orders, products
from main import create_app
from security import token_for_user
from settings import Settings


@dataclass
class Account:
    user: Dict[str, Any]
    headers: Dict[str, str]

    @property
    def id(self) -> int:
        return self.user["id"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'storefront-test.db'}",
        jwt_secret="test-secret",
        log_level="WARNING",
        order_number_prefix="TST",
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    yield app
    app.state.services.db.dispose()


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def services(app):
    return app.state.services


def _account(services, name, email, role="customer") -> Account:
    user = services.accounts.register(name, email, "secret123", role=role)
    token = token_for_user(user, services.settings)
    return Account(user=user, headers={"Authorization": f"Bearer {token}"})


@pytest.fixture
def customer(services):
    return _account(services, "Jane Buyer", "jane@example.com")


@pytest.fixture
def other_customer(services):
    return _account(services, "Sam Other", "sam@example.com")


@pytest.fixture
def admin(services):
    return _account(services, "Store Admin", "admin@example.com", role="admin")


@pytest.fixture
def make_product(services):
    def _make(title="Desk Lamp", price="19.99", stock_quantity=10, category="lighting", **extra):
        data = {"title": title, "price": Decimal(price), "stock_quantity": stock_quantity, "category": category}
        data.update(extra)
        return services.catalog.create(data)

    return _make


@pytest.fixture
def stock_of(services):
    def _stock(product_id):
        with services.db.connect() as conn:
            return conn.execute(select(products.c.stock_quantity).where(products.c.id == product_id)).scalar()

    return _stock


@pytest.fixture
def count_rows(services):
    tables = {"orders": orders, "order_items": order_items, "cart_items": cart_items}

    def _count(name):
        with services.db.connect() as conn:
            return conn.execute(select(func.count()).select_from(tables[name])).scalar()

    return _count


@pytest.fixture
def shipping():
    return {"fullName": "Jane Buyer", "street": "1 Main St", "city": "Springfield", "postalCode": "12345"}


@pytest.fixture
def place(client, shipping):
    """POST /checkout for an account with sensible defaults."""

    def _place(account, items, total="10.00", headers=None, **overrides):
        body = {
            "items": items,
            "shippingAddress": shipping,
            "paymentMethod": "bank_transfer",
            "totalAmount": total,
            "email": account.user["email"],
        }
        body.update(overrides)
        all_headers = dict(account.headers)
        all_headers.update(headers or {})
        return client.post("/checkout", json=body, headers=all_headers)

    return _place
