"""
Trader (vendor) accounts.

A trader is a user plus a shop record, written in one transaction.
Applications start out ``pending``.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from accounts import AccountService
from database import Database, row_to_dict, traders, users
from errors import Conflict, TraderNotFound

logger = logging.getLogger(__name__)


def _trader_select():
    return select(
        traders,
        users.c.name.label("owner_name"),
        users.c.email.label("owner_email"),
        users.c.created_at.label("user_created_at"),
    ).select_from(traders.join(users, traders.c.user_id == users.c.id))


class TraderService:
    def __init__(self, db: Database):
        self.db = db

    def register(
        self,
        name: str,
        shop_name: str,
        email: str,
        phone: str,
        password: str,
        shop_address: str,
        shop_description: Optional[str] = None,
        shop_logo: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            with self.db.transaction() as conn:
                taken = conn.execute(select(traders.c.id).where(traders.c.shop_name == shop_name)).first()
                if taken:
                    raise Conflict("Shop name already taken")
                user_id = AccountService.create_in(conn, name, email, password)
                conn.execute(
                    insert(traders).values(
                        user_id=user_id,
                        shop_name=shop_name,
                        phone=phone,
                        shop_address=shop_address,
                        shop_description=shop_description or None,
                        shop_logo=shop_logo,
                        status="pending",
                    )
                )
        except IntegrityError:
            raise Conflict("Shop name or email already registered")
        logger.info("Trader application for %r from user %s", shop_name, user_id)
        return self.get_by_user(user_id)

    def get_by_user(self, user_id: int) -> Dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(_trader_select().where(traders.c.user_id == user_id)).first()
        if row is None:
            raise TraderNotFound(user_id)
        return row_to_dict(row)

    def list_all(self) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(_trader_select().order_by(traders.c.created_at.desc(), traders.c.id.desc())).all()
        return [row_to_dict(r) for r in rows]
