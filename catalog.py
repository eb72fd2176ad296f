import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from database import Database, product_features, products, row_to_dict
from errors import Conflict, NoFieldsToUpdate, ProductNotFound, ValidationError

logger = logging.getLogger(__name__)

SORTS = {
    "price_asc": (products.c.price.asc(),),
    "price_desc": (products.c.price.desc(),),
    "new": (products.c.created_at.desc(), products.c.id.desc()),
    "rating": (products.c.rating.desc(), products.c.review_count.desc()),
}
DEFAULT_SORT = (products.c.featured.desc(), products.c.created_at.desc(), products.c.id.desc())


def decode_images(raw: Optional[str], title: Optional[str] = None) -> List[str]:
    """Stored images are a JSON list, but older rows may hold a bare URL."""
    images: List[str] = []
    if raw:
        try:
            parsed = json.loads(raw)
            images = parsed if isinstance(parsed, list) else [parsed]
        except ValueError:
            images = [raw]
    images = [i for i in images if i]
    if not images:
        images = [f"/api/placeholder/400/400?text={quote_plus(title or 'Product')}"]
    return images


def serialize_product(row: Any) -> Dict[str, Any]:
    p = row_to_dict(row)
    p["price"] = float(p["price"])
    p["original_price"] = float(p["original_price"]) if p.get("original_price") is not None else None
    p["images"] = decode_images(p.get("images"), p.get("title"))
    p["in_stock"] = p["stock_quantity"] > 0
    p["featured"] = bool(p["featured"])
    p["published"] = bool(p["published"])
    return p


class ProductCatalog:
    def __init__(self, db: Database):
        self.db = db

    def list_products(
        self,
        q: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        in_stock: Optional[bool] = None,
        sort: Optional[str] = None,
        limit: int = 20,
        page: int = 1,
    ) -> Dict[str, Any]:
        conditions = [products.c.published.is_(True)]
        if q:
            pattern = f"%{q}%"
            conditions.append(
                or_(
                    products.c.title.ilike(pattern),
                    products.c.description.ilike(pattern),
                    products.c.category.ilike(pattern),
                    products.c.brand.ilike(pattern),
                )
            )
        if category:
            conditions.append(products.c.category == category)
        if min_price is not None:
            conditions.append(products.c.price >= min_price)
        if max_price is not None:
            conditions.append(products.c.price <= max_price)
        if in_stock is True:
            conditions.append(products.c.stock_quantity > 0)
        elif in_stock is False:
            conditions.append(products.c.stock_quantity == 0)

        limit = max(1, min(limit, 100))
        skip = max(page - 1, 0) * limit
        stmt = select(products).where(*conditions).order_by(*SORTS.get(sort, DEFAULT_SORT)).offset(skip).limit(limit)
        with self.db.connect() as conn:
            total = conn.execute(select(func.count()).select_from(products).where(*conditions)).scalar()
            rows = conn.execute(stmt).all()
        return {"items": [serialize_product(r) for r in rows], "total": total, "page": page, "limit": limit}

    def get(self, product_id: int) -> Dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(select(products).where(products.c.id == product_id)).first()
        if not row:
            raise ProductNotFound(product_id)
        return serialize_product(row)

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = dict(data)
        values["images"] = json.dumps(values.get("images") or [])
        with self.db.transaction() as conn:
            product_id = conn.execute(insert(products).values(**values)).inserted_primary_key[0]
        logger.info("Created product %s (%s)", product_id, values.get("title"))
        return self.get(product_id)

    def update(self, product_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not changes:
            raise NoFieldsToUpdate()
        nulls = sorted(k for k, v in changes.items() if v is None and k in products.c and not products.c[k].nullable)
        if nulls:
            raise ValidationError(f"Cannot set {', '.join(nulls)} to null")
        values = dict(changes)
        if "images" in values:
            values["images"] = json.dumps(values["images"] or [])
        values["updated_at"] = func.current_timestamp()
        with self.db.transaction() as conn:
            res = conn.execute(update(products).where(products.c.id == product_id).values(**values))
            if res.rowcount == 0:
                raise ProductNotFound(product_id)
        logger.info("Updated product %s: %s", product_id, sorted(changes))
        return self.get(product_id)

    def delete(self, product_id: int) -> None:
        try:
            with self.db.transaction() as conn:
                res = conn.execute(delete(products).where(products.c.id == product_id))
                if res.rowcount == 0:
                    raise ProductNotFound(product_id)
        except IntegrityError:
            raise Conflict("Product has been ordered and cannot be deleted")
        logger.info("Deleted product %s", product_id)

    def features(self, product_id: int) -> List[Dict[str, Any]]:
        stmt = (
            select(product_features)
            .where(product_features.c.product_id == product_id)
            .order_by(product_features.c.created_at.asc(), product_features.c.id.asc())
        )
        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
        return [row_to_dict(r) for r in rows]

    def add_feature(
        self, product_id: int, title: str, description: Optional[str] = None, icon: Optional[str] = None
    ) -> int:
        with self.db.transaction() as conn:
            exists = conn.execute(select(products.c.id).where(products.c.id == product_id)).first()
            if not exists:
                raise ProductNotFound(product_id)
            result = conn.execute(
                insert(product_features).values(product_id=product_id, title=title, description=description, icon=icon)
            )
            feature_id = result.inserted_primary_key[0]
        logger.info("Added feature %s to product %s", feature_id, product_id)
        return feature_id

    def delete_feature(self, product_id: int, feature_id: int) -> None:
        # a feature id belonging to another product deletes nothing
        with self.db.transaction() as conn:
            conn.execute(
                delete(product_features).where(
                    product_features.c.id == feature_id, product_features.c.product_id == product_id
                )
            )
