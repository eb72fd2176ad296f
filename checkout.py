"""
Order placement.

An order, its line items, the stock decrements and the cart clean-up are one
unit of work: either all of them are committed or none are.
"""
import json
import logging
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from cart import CartService
from database import Database, order_items, orders
from errors import EmptyCart, InsufficientStock, ProductNotFound, StorefrontError, ValidationError
from stock import StockLedger

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class LineItem:
    product_id: int
    quantity: int
    # what the client believed the price was; never used as the price of record
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    order_number: str
    replayed: bool = False


def generate_order_number(prefix: str = "DVZ") -> str:
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


class OrderTransactionManager:
    def __init__(
        self,
        db: Database,
        ledger: StockLedger,
        cart: CartService,
        order_number_prefix: str = "DVZ",
        order_number_factory: Optional[Callable[[], str]] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.cart = cart
        self.order_number_factory = order_number_factory or (lambda: generate_order_number(order_number_prefix))

    def place_order(
        self,
        user_id: int,
        line_items: Sequence[LineItem],
        shipping_address: Optional[Dict[str, Any]],
        payment_method: Optional[str],
        total_amount: Optional[Decimal],
        customer_email: Optional[str],
        idempotency_key: Optional[str] = None,
        payment_verification_url: Optional[str] = None,
    ) -> PlacedOrder:
        if not line_items:
            raise EmptyCart()
        if not shipping_address or not payment_method or total_amount is None or not customer_email:
            raise ValidationError("Missing required fields")

        if idempotency_key:
            existing = self.find_by_idempotency_key(user_id, idempotency_key)
            if existing is not None:
                logger.info("Replaying order %s for idempotency key %r", existing.order_number, idempotency_key)
                return existing

        try:
            with self.db.transaction() as conn:
                placed = self._place(
                    conn,
                    user_id,
                    line_items,
                    shipping_address,
                    payment_method,
                    to_money(total_amount),
                    customer_email,
                    idempotency_key,
                    payment_verification_url,
                )
        except StorefrontError as exc:
            logger.warning("Checkout rolled back for user %s: %s", user_id, exc.message)
            raise
        except IntegrityError:
            # a concurrent retry with the same key committed first
            if idempotency_key:
                existing = self.find_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return existing
            raise

        logger.info("Order created: %s (id %s) for user %s", placed.order_number, placed.order_id, user_id)
        return placed

    def _place(
        self,
        conn: Connection,
        user_id: int,
        line_items: Sequence[LineItem],
        shipping_address: Dict[str, Any],
        payment_method: str,
        total_amount: Decimal,
        customer_email: str,
        idempotency_key: Optional[str],
        payment_verification_url: Optional[str],
    ) -> PlacedOrder:
        order_number = self.order_number_factory()
        order_id = conn.execute(
            insert(orders).values(
                user_id=user_id,
                order_number=order_number,
                total_amount=total_amount,
                shipping_address=json.dumps(shipping_address),
                payment_method=payment_method,
                status="pending",
                payment_status="pending",
                customer_email=customer_email,
                idempotency_key=idempotency_key,
                payment_verification_url=payment_verification_url,
            )
        ).inserted_primary_key[0]

        for item in line_items:
            product = self.ledger.read(conn, item.product_id, for_update=True)
            if product is None:
                raise ProductNotFound(item.product_id)
            if product.stock_quantity < item.quantity:
                raise InsufficientStock(item.product_id, item.quantity, product.stock_quantity)

            unit_price = to_money(product.price)
            if item.price is not None and to_money(item.price) != unit_price:
                logger.info(
                    "Ignoring client price %s for product %s, charging %s", item.price, item.product_id, unit_price
                )
            conn.execute(
                insert(order_items).values(
                    order_id=order_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    total_price=(unit_price * item.quantity).quantize(CENT),
                )
            )
            self.ledger.decrement(conn, item.product_id, item.quantity)

        self.cart.clear_in(conn, user_id)
        return PlacedOrder(order_id=order_id, order_number=order_number)

    def find_by_idempotency_key(self, user_id: int, key: str) -> Optional[PlacedOrder]:
        with self.db.connect() as conn:
            row = conn.execute(
                select(orders.c.id, orders.c.order_number).where(
                    orders.c.user_id == user_id, orders.c.idempotency_key == key
                )
            ).first()
        if row is None:
            return None
        return PlacedOrder(order_id=row.id, order_number=row.order_number, replayed=True)

    def line_items_from_cart(self, user_id: int) -> List[LineItem]:
        return [LineItem(line.product_id, line.quantity) for line in self.cart.snapshot(user_id)]
