"""
Order lifecycle after checkout.

Every transition is triggered by an admin request; nothing here runs on a
timer. Payment status is tracked next to the order status and is only changed
by payment verification, which also moves the order status.

Admins may set any status in ``ORDER_STATUSES``; backward moves are allowed.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update

from database import Database, order_items, orders, products, users
from errors import Forbidden, InvalidStatus, NoFieldsToUpdate, OrderNotFound, ValidationError

logger = logging.getLogger(__name__)

WORKFLOW = ("pending", "confirmed", "processing", "shipped", "delivered")
ORDER_STATUSES = WORKFLOW + ("cancelled",)
PAYMENT_STATUSES = ("pending", "paid", "failed")

UPDATABLE_FIELDS = frozenset({"status", "admin_notes"})


def _order_select():
    return select(
        orders,
        users.c.name.label("user_name"),
        users.c.email.label("user_email"),
        users.c.role.label("user_role"),
    ).select_from(orders.outerjoin(users, orders.c.user_id == users.c.id))


def _decode_address(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def serialize_order(row: Any, items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    o = row._mapping
    return {
        "id": o["id"],
        "user_id": o["user_id"],
        "order_number": o["order_number"],
        "total_amount": float(o["total_amount"]),
        "shipping_address": _decode_address(o["shipping_address"]),
        "payment_method": o["payment_method"],
        "status": o["status"],
        "payment_status": o["payment_status"],
        "customer_email": o["customer_email"],
        "payment_verification_url": o["payment_verification_url"],
        "payment_screenshot_filename": o["payment_screenshot_filename"],
        "payment_verified": bool(o["payment_verified"]),
        "admin_notes": o["admin_notes"],
        "created_at": o["created_at"],
        "updated_at": o["updated_at"],
        "items": items or [],
        "user": {
            "id": o["user_id"],
            "name": o["user_name"],
            "email": o["user_email"],
            "role": o["user_role"],
        }
        if o["user_name"] is not None
        else None,
    }


class OrderService:
    def __init__(self, db: Database):
        self.db = db

    def _items_by_order(self, conn, order_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
        order_ids = list(order_ids)
        grouped: Dict[int, List[Dict[str, Any]]] = {oid: [] for oid in order_ids}
        if not order_ids:
            return grouped
        rows = conn.execute(
            select(order_items, products.c.title)
            .select_from(order_items.outerjoin(products, order_items.c.product_id == products.c.id))
            .where(order_items.c.order_id.in_(order_ids))
            .order_by(order_items.c.id)
        ).all()
        for r in rows:
            grouped[r.order_id].append(
                {
                    "id": r.id,
                    "product_id": r.product_id,
                    "title": r.title,
                    "quantity": r.quantity,
                    "unit_price": float(r.unit_price),
                    "total_price": float(r.total_price),
                }
            )
        return grouped

    def _load(self, order_id: int) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute(_order_select().where(orders.c.id == order_id)).first()
            if row is None:
                return None
            items = self._items_by_order(conn, [row.id])
        return serialize_order(row, items[row.id])

    def _list(self, conditions: List[Any]) -> List[Dict[str, Any]]:
        stmt = _order_select().where(*conditions).order_by(orders.c.created_at.desc(), orders.c.id.desc())
        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
            items = self._items_by_order(conn, [r.id for r in rows])
        return [serialize_order(r, items[r.id]) for r in rows]

    @staticmethod
    def _filters(status: Optional[str], payment_status: Optional[str]) -> List[Any]:
        conditions = []
        if status and status != "all":
            conditions.append(orders.c.status == status)
        if payment_status and payment_status != "all":
            conditions.append(orders.c.payment_status == payment_status)
        return conditions

    def get_order(self, order_id: int, requester: Dict[str, Any]) -> Dict[str, Any]:
        order = self._load(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if requester.get("role") != "admin" and order["user_id"] != requester.get("id"):
            raise Forbidden()
        return order

    def list_for_user(
        self, user_id: int, status: Optional[str] = None, payment_status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self._list([orders.c.user_id == user_id] + self._filters(status, payment_status))

    def list_all(self, status: Optional[str] = None, payment_status: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._list(self._filters(status, payment_status))

    def update_status(self, order_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in changes.items() if not (k == "status" and v is None)}
        if not values:
            raise NoFieldsToUpdate()
        new_status = values.get("status")
        if new_status is not None and new_status not in ORDER_STATUSES:
            raise InvalidStatus("Invalid status. Must be one of: " + ", ".join(ORDER_STATUSES))

        with self.db.transaction() as conn:
            current = conn.execute(
                select(orders.c.status).where(orders.c.id == order_id).with_for_update()
            ).scalar()
            if current is None:
                raise OrderNotFound(order_id)
            values["updated_at"] = func.current_timestamp()
            conn.execute(update(orders).where(orders.c.id == order_id).values(**values))

        if new_status is not None and new_status != current:
            logger.info("Order %s status %s -> %s", order_id, current, new_status)
        return self._load(order_id)

    def verify_payment(self, order_id: int, verified: bool, notes: Optional[str] = None) -> Dict[str, Any]:
        payment_status = "paid" if verified else "failed"
        status = "processing" if verified else "pending"
        with self.db.transaction() as conn:
            current = conn.execute(
                select(orders.c.status).where(orders.c.id == order_id).with_for_update()
            ).scalar()
            if current is None:
                raise OrderNotFound(order_id)
            conn.execute(
                update(orders)
                .where(orders.c.id == order_id)
                .values(
                    payment_verified=verified,
                    admin_notes=notes,
                    payment_status=payment_status,
                    status=status,
                    updated_at=func.current_timestamp(),
                )
            )
        logger.info("Payment %s for order %s", "verified" if verified else "rejected", order_id)
        return self._load(order_id)
