import logging
from typing import Any, Dict, Optional

from sqlalchemy import and_, case, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from database import Database, order_items, orders, product_reviews, products, review_votes, users
from errors import DuplicateReview, ProductNotFound, ReviewNotFound

logger = logging.getLogger(__name__)

VOTE_TYPES = ("helpful", "not_helpful")


def _votes_subquery():
    return (
        select(
            review_votes.c.review_id,
            func.sum(case((review_votes.c.vote_type == "helpful", 1), else_=0)).label("helpful_count"),
            func.sum(case((review_votes.c.vote_type == "not_helpful", 1), else_=0)).label("not_helpful_count"),
        )
        .group_by(review_votes.c.review_id)
        .subquery("v")
    )


class ReviewService:
    def __init__(self, db: Database):
        self.db = db

    def submit(self, product_id: int, user_id: int, rating: int, title: str, comment: str) -> Dict[str, Any]:
        """Store a review and recompute the product's rating and review count from scratch."""
        try:
            with self.db.transaction() as conn:
                if conn.execute(select(products.c.id).where(products.c.id == product_id)).first() is None:
                    raise ProductNotFound(product_id)

                already = conn.execute(
                    select(product_reviews.c.id).where(
                        product_reviews.c.product_id == product_id, product_reviews.c.user_id == user_id
                    )
                ).first()
                if already:
                    raise DuplicateReview()

                purchase = conn.execute(
                    select(order_items.c.id)
                    .select_from(order_items.join(orders, order_items.c.order_id == orders.c.id))
                    .where(
                        orders.c.user_id == user_id,
                        order_items.c.product_id == product_id,
                        orders.c.payment_status == "paid",
                    )
                    .limit(1)
                ).first()
                verified_purchase = purchase is not None

                review_id = conn.execute(
                    insert(product_reviews).values(
                        product_id=product_id,
                        user_id=user_id,
                        rating=rating,
                        title=title.strip(),
                        comment=comment.strip(),
                        verified_purchase=verified_purchase,
                    )
                ).inserted_primary_key[0]

                of_product = product_reviews.c.product_id == product_id
                conn.execute(
                    update(products)
                    .where(products.c.id == product_id)
                    .values(
                        rating=select(func.coalesce(func.avg(product_reviews.c.rating), 0))
                        .where(of_product)
                        .scalar_subquery(),
                        review_count=select(func.count(product_reviews.c.id)).where(of_product).scalar_subquery(),
                    )
                )
        except IntegrityError:
            raise DuplicateReview()

        logger.info("Review %s added to product %s (verified purchase: %s)", review_id, product_id, verified_purchase)
        return {"reviewId": review_id, "verified_purchase": verified_purchase}

    def list_for_product(
        self,
        product_id: int,
        page: int = 1,
        limit: int = 10,
        sort: str = "newest",
        viewer_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = max(1, min(limit, 50))
        v = _votes_subquery()
        helpful = func.coalesce(v.c.helpful_count, 0)
        not_helpful = func.coalesce(v.c.not_helpful_count, 0)
        viewer_vote = review_votes.alias("uv")

        order_by = {
            "oldest": (product_reviews.c.created_at.asc(), product_reviews.c.id.asc()),
            "highest": (product_reviews.c.rating.desc(), product_reviews.c.created_at.desc()),
            "lowest": (product_reviews.c.rating.asc(), product_reviews.c.created_at.desc()),
            "helpful": ((helpful - not_helpful).desc(), product_reviews.c.created_at.desc()),
        }.get(sort, (product_reviews.c.created_at.desc(), product_reviews.c.id.desc()))

        stmt = (
            select(
                product_reviews,
                func.coalesce(users.c.name, "Anonymous User").label("user_name"),
                helpful.label("helpful_count"),
                not_helpful.label("not_helpful_count"),
                func.coalesce(viewer_vote.c.vote_type, "").label("user_vote"),
            )
            .select_from(
                product_reviews.outerjoin(users, product_reviews.c.user_id == users.c.id)
                .outerjoin(v, product_reviews.c.id == v.c.review_id)
                .outerjoin(
                    viewer_vote,
                    and_(product_reviews.c.id == viewer_vote.c.review_id, viewer_vote.c.user_id == (viewer_id or 0)),
                )
            )
            .where(product_reviews.c.product_id == product_id)
            .order_by(*order_by)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        stars = [
            func.sum(case((product_reviews.c.rating == n, 1), else_=0)).label(f"star_{n}") for n in range(5, 0, -1)
        ]
        stats_stmt = select(
            func.count(product_reviews.c.id).label("total_reviews"),
            func.avg(product_reviews.c.rating).label("average_rating"),
            *stars,
        ).where(product_reviews.c.product_id == product_id)

        with self.db.connect() as conn:
            rows = conn.execute(stmt).all()
            stats = conn.execute(stats_stmt).first()

        total = stats.total_reviews or 0
        reviews = []
        for r in rows:
            review = dict(r._mapping)
            review["verified_purchase"] = bool(review["verified_purchase"])
            reviews.append(review)

        return {
            "reviews": reviews,
            "pagination": {"page": page, "limit": limit, "total": total, "hasMore": total > page * limit},
            "stats": {
                "average_rating": float(stats.average_rating or 0),
                "total_reviews": total,
                "rating_distribution": [
                    {"stars": n, "count": int(getattr(stats, f"star_{n}") or 0)} for n in range(5, 0, -1)
                ],
            },
        }

    def vote(self, review_id: int, user_id: int, vote_type: str) -> str:
        """Record a vote; repeating the same vote withdraws it. Returns what happened."""
        with self.db.transaction() as conn:
            if conn.execute(select(product_reviews.c.id).where(product_reviews.c.id == review_id)).first() is None:
                raise ReviewNotFound(review_id)
            mine = and_(review_votes.c.review_id == review_id, review_votes.c.user_id == user_id)
            existing = conn.execute(select(review_votes.c.vote_type).where(mine)).scalar()
            if existing == vote_type:
                conn.execute(delete(review_votes).where(mine))
                return "removed"
            if existing is not None:
                conn.execute(update(review_votes).where(mine).values(vote_type=vote_type))
                return "changed"
            conn.execute(insert(review_votes).values(review_id=review_id, user_id=user_id, vote_type=vote_type))
            return "added"
