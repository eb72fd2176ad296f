import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from database import Database, row_to_dict, users
from errors import Conflict, Unauthenticated
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

PUBLIC_COLUMNS = (
    users.c.id,
    users.c.name,
    users.c.email,
    users.c.role,
    users.c.email_verified,
    users.c.created_at,
    users.c.updated_at,
)


class AccountService:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def create_in(conn, name: str, email: str, password: str, role: str = "customer") -> int:
        """Insert a user on an open transaction and return the new id."""
        email = email.lower()
        existing = conn.execute(select(users.c.id).where(users.c.email == email)).first()
        if existing:
            raise Conflict("User with this email already exists")
        result = conn.execute(
            insert(users).values(
                name=name,
                email=email,
                password_hash=hash_password(password),
                role=role,
            )
        )
        return result.inserted_primary_key[0]

    def register(self, name: str, email: str, password: str, role: str = "customer") -> Dict[str, Any]:
        try:
            with self.db.transaction() as conn:
                user_id = self.create_in(conn, name, email, password, role)
        except IntegrityError:
            raise Conflict("User with this email already exists")
        logger.info("Registered %s user %s", role, user_id)
        return self.get(user_id)

    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(select(users).where(users.c.email == email.lower())).first()
        if not row or not verify_password(password, row.password_hash):
            raise Unauthenticated("Invalid email or password")
        user = row_to_dict(row)
        # Never send password hash
        user.pop("password_hash", None)
        return user

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute(select(*PUBLIC_COLUMNS).where(users.c.id == user_id)).first()
        return row_to_dict(row)

    def list_users(self) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(select(*PUBLIC_COLUMNS).order_by(users.c.created_at.desc(), users.c.id.desc())).all()
        return [row_to_dict(r) for r in rows]

    def ensure_admin(self, email: str, password: str, name: str) -> None:
        """Create the configured admin account unless the e-mail is taken."""
        with self.db.connect() as conn:
            count = conn.execute(select(func.count()).select_from(users).where(users.c.email == email.lower())).scalar()
        if count:
            return
        self.register(name=name, email=email, password=password, role="admin")
