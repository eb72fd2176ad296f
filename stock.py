"""
Product stock ledger.

Both operations run on a connection owned by the caller's transaction; the
ledger never commits on its own.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Connection

from database import products
from errors import InsufficientStock

logger = logging.getLogger(__name__)


class StockLedger:
    def read(self, conn: Connection, product_id: int, for_update: bool = False) -> Optional[Any]:
        stmt = select(products.c.id, products.c.title, products.c.price, products.c.stock_quantity).where(
            products.c.id == product_id
        )
        if for_update:
            # no-op on SQLite, which locks the whole database for the transaction
            stmt = stmt.with_for_update()
        return conn.execute(stmt).first()

    def decrement(self, conn: Connection, product_id: int, quantity: int) -> None:
        result = conn.execute(
            update(products)
            .where(products.c.id == product_id, products.c.stock_quantity >= quantity)
            .values(stock_quantity=products.c.stock_quantity - quantity)
        )
        if result.rowcount != 1:
            current = self.read(conn, product_id)
            available = current.stock_quantity if current is not None else 0
            logger.warning(
                "Stock decrement refused for product %s: requested %s, available %s",
                product_id,
                quantity,
                available,
            )
            raise InsufficientStock(product_id, quantity, available)
