import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from catalog import serialize_product
from database import Database, categories, products, row_to_dict
from errors import CategoryNotFound, Conflict

logger = logging.getLogger(__name__)

FEATURED_LIMIT = 6

CATEGORY_COLUMNS = (
    categories.c.id,
    categories.c.name,
    categories.c.slug,
    categories.c.description,
    categories.c.image_url.label("image"),
    categories.c.featured,
)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _serialize(row: Any) -> Dict[str, Any]:
    c = row_to_dict(row)
    c["featured"] = bool(c["featured"])
    return c


class CategoryDirectory:
    """Read side of the category list; products link to a category by name."""

    def __init__(self, db: Database):
        self.db = db

    def list_all(self) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(select(*CATEGORY_COLUMNS).order_by(categories.c.name.asc())).all()
        return [_serialize(r) for r in rows]

    def featured(self) -> List[Dict[str, Any]]:
        stmt = (
            select(*CATEGORY_COLUMNS, func.count(products.c.id).label("product_count"))
            .select_from(categories.outerjoin(products, products.c.category == categories.c.name))
            .where(categories.c.featured.is_(True))
            .group_by(categories.c.id)
            .order_by(categories.c.name.asc())
            .limit(FEATURED_LIMIT)
        )
        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
        return [_serialize(r) for r in rows]

    def get(self, slug: str) -> Dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(select(*CATEGORY_COLUMNS).where(categories.c.slug == slug)).first()
        if row is None:
            raise CategoryNotFound(slug)
        return _serialize(row)

    def products(self, slug: str) -> List[Dict[str, Any]]:
        category = self.get(slug)
        stmt = (
            select(products)
            .where(products.c.category == category["name"], products.c.published.is_(True))
            .order_by(products.c.created_at.desc(), products.c.id.desc())
        )
        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
        return [serialize_product(r) for r in rows]

    def create(
        self,
        name: str,
        slug: Optional[str] = None,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
        featured: bool = False,
    ) -> Dict[str, Any]:
        slug = slug or slugify(name)
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    insert(categories).values(
                        name=name, slug=slug, description=description, image_url=image_url, featured=featured
                    )
                )
        except IntegrityError:
            raise Conflict("Category already exists")
        logger.info("Created category %s", slug)
        return self.get(slug)
