import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "sqlite:///./storefront.db"
    sql_echo: bool = False

    jwt_secret: str = "dev-secret-change"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    order_number_prefix: str = "DVZ"
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Store Admin"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build settings from the process environment."""
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./storefront.db"),
        sql_echo=_as_bool(os.getenv("SQL_ECHO", "false")),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7))),
        order_number_prefix=os.getenv("ORDER_NUMBER_PREFIX", "DVZ"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        admin_email=os.getenv("ADMIN_EMAIL") or None,
        admin_password=os.getenv("ADMIN_PASSWORD") or None,
        admin_name=os.getenv("ADMIN_NAME", "Store Admin"),
    )
