import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from catalog import decode_images
from database import Database, cart_items, carts, products
from errors import ProductNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal


class CartService:
    def __init__(self, db: Database):
        self.db = db

    def _cart_id(self, conn: Connection, user_id: int) -> Optional[int]:
        return conn.execute(select(carts.c.id).where(carts.c.user_id == user_id)).scalar()

    def _get_or_create_cart_id(self, conn: Connection, user_id: int) -> int:
        cart_id = self._cart_id(conn, user_id)
        if cart_id is None:
            cart_id = conn.execute(insert(carts).values(user_id=user_id)).inserted_primary_key[0]
        return cart_id

    def snapshot(self, user_id: int) -> List[CartLine]:
        """Priced cart lines at the product's current stored price; empty when there is no cart."""
        stmt = (
            select(cart_items.c.product_id, cart_items.c.quantity, products.c.price)
            .select_from(
                cart_items.join(carts, cart_items.c.cart_id == carts.c.id).join(
                    products, cart_items.c.product_id == products.c.id
                )
            )
            .where(carts.c.user_id == user_id)
            .order_by(cart_items.c.id)
        )
        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
        return [CartLine(r.product_id, r.quantity, Decimal(str(r.price))) for r in rows]

    def get_cart(self, user_id: int) -> Dict[str, Any]:
        with self.db.transaction() as conn:
            cart_id = self._get_or_create_cart_id(conn, user_id)
            rows = conn.execute(
                select(
                    cart_items.c.product_id,
                    cart_items.c.quantity,
                    products.c.title,
                    products.c.description,
                    products.c.price,
                    products.c.images,
                    products.c.category,
                    products.c.stock_quantity,
                )
                .select_from(cart_items.join(products, cart_items.c.product_id == products.c.id))
                .where(cart_items.c.cart_id == cart_id)
                .order_by(cart_items.c.id)
            ).all()

        items = []
        for r in rows:
            items.append(
                {
                    "productId": r.product_id,
                    "quantity": r.quantity,
                    "name": r.title,
                    "description": r.description,
                    "price": float(r.price),
                    "images": decode_images(r.images, r.title),
                    "category": r.category,
                    "stockQuantity": r.stock_quantity,
                }
            )
        return {"cartId": cart_id, "items": items, "totalItems": sum(i["quantity"] for i in items)}

    def add_item(self, user_id: int, product_id: int, quantity: int = 1) -> None:
        with self.db.transaction() as conn:
            exists = conn.execute(select(products.c.id).where(products.c.id == product_id)).first()
            if not exists:
                raise ProductNotFound(product_id)
            cart_id = self._get_or_create_cart_id(conn, user_id)
            # merge with an existing line for the same product
            merged = conn.execute(
                update(cart_items)
                .where(cart_items.c.cart_id == cart_id, cart_items.c.product_id == product_id)
                .values(quantity=cart_items.c.quantity + quantity, updated_at=func.current_timestamp())
            )
            if merged.rowcount == 0:
                conn.execute(insert(cart_items).values(cart_id=cart_id, product_id=product_id, quantity=quantity))
            conn.execute(update(carts).where(carts.c.id == cart_id).values(updated_at=func.current_timestamp()))

    def update_item(self, user_id: int, product_id: int, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(user_id, product_id)
            return
        with self.db.transaction() as conn:
            cart_id = self._cart_id(conn, user_id)
            if cart_id is None:
                return
            conn.execute(
                update(cart_items)
                .where(cart_items.c.cart_id == cart_id, cart_items.c.product_id == product_id)
                .values(quantity=quantity, updated_at=func.current_timestamp())
            )

    def remove_item(self, user_id: int, product_id: int) -> None:
        with self.db.transaction() as conn:
            cart_id = self._cart_id(conn, user_id)
            if cart_id is None:
                return
            conn.execute(
                delete(cart_items).where(cart_items.c.cart_id == cart_id, cart_items.c.product_id == product_id)
            )

    def clear(self, user_id: int) -> None:
        with self.db.transaction() as conn:
            self.clear_in(conn, user_id)

    def clear_in(self, conn: Connection, user_id: int) -> int:
        """Delete every line of the user's cart inside the caller's transaction."""
        cart_id = self._cart_id(conn, user_id)
        if cart_id is None:
            return 0
        return conn.execute(delete(cart_items).where(cart_items.c.cart_id == cart_id)).rowcount
