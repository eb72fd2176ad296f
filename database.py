"""
Relational storage for the storefront.

Tables are declared with SQLAlchemy Core so the same schema runs on SQLite
(development, tests) and on a server database. Services never hold a global
engine: they receive a ``Database`` at construction and open one connection
or one transaction per operation.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    inspect,
    text,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

# execution option marking connections opened by Database.transaction()
WRITE_LOCK = "storefront_write_lock"

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="customer"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(255), nullable=False),
    Column("description", Text),
    Column("price", Numeric(10, 2), nullable=False),
    Column("original_price", Numeric(10, 2)),
    Column("category", String(100), nullable=False),
    Column("brand", String(100)),
    Column("stock_quantity", Integer, nullable=False, server_default="0"),
    Column("availability", String(20), nullable=False, server_default="in_stock"),
    Column("images", Text),  # JSON list of URLs
    Column("rating", Float, nullable=False, server_default="0"),
    Column("review_count", Integer, nullable=False, server_default="0"),
    Column("featured", Boolean, nullable=False, server_default="0"),
    Column("published", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
)

carts = Table(
    "carts",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("cart_id", Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("quantity", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("cart_id", "product_id", name="uq_cart_product"),
    CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("shipping_address", Text, nullable=False),  # serialized JSON
    Column("payment_method", String(50), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("payment_status", String(20), nullable=False, server_default="pending"),
    Column("customer_email", String(255), nullable=False),
    Column("payment_verified", Boolean, nullable=False, server_default="0"),
    Column("payment_verification_url", String(500)),
    Column("payment_screenshot_filename", String(255)),
    Column("admin_notes", Text),
    Column("idempotency_key", String(128)),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("total_price", Numeric(10, 2), nullable=False),
)

product_reviews = Table(
    "product_reviews",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("rating", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("comment", Text, nullable=False),
    Column("verified_purchase", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("product_id", "user_id", name="uq_review_product_user"),
    CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating_range"),
)

review_votes = Table(
    "review_votes",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("review_id", Integer, ForeignKey("product_reviews.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("vote_type", String(20), nullable=False),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint("review_id", "user_id", name="uq_review_vote_user"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("slug", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("image_url", String(500)),
    Column("featured", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

product_features = Table(
    "product_features",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", Text),
    Column("icon", String(100)),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

traders = Table(
    "traders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("shop_name", String(255), nullable=False, unique=True),
    Column("phone", String(20), nullable=False),
    Column("shop_address", Text, nullable=False),
    Column("shop_description", Text),
    Column("shop_logo", String(500)),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite opens transactions lazily and only before DML; hand BEGIN over
    # to SQLAlchemy. Write transactions take the lock up front so
    # check-then-decrement sequences serialize like row locks on a server
    # database; plain reads stay deferred.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


class Database:
    """Connection provider handed to every service."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Database":
        return cls(create_db_engine(url, echo=echo))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside BEGIN ... COMMIT; roll back on any error."""
        with self.engine.connect() as conn:
            conn.execution_options(**{WRITE_LOCK: True})
            with conn.begin():
                yield conn

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            yield conn

    def create_schema(self) -> None:
        metadata.create_all(self.engine)
        logger.info("Database schema ready (%s)", self.dialect)

    def table_names(self) -> List[str]:
        return inspect(self.engine).get_table_names()

    def ping(self) -> bool:
        with self.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def dispose(self) -> None:
        self.engine.dispose()


def row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return dict(row._mapping)
