"""
Product reviews and the rating figures derived from them.

Ratings are aggregated from the review collection on every read; nothing
is cached on the product.
"""

import logging
from typing import Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, pagination, serialize, utcnow
from errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from schemas import OrderStatus, Review

logger = logging.getLogger(__name__)

RATINGS = (5, 4, 3, 2, 1)


def _round_rating(value: float) -> float:
    return round(value * 10) / 10


def rating_summary(db, product_ids: Iterable[str]) -> dict:
    """Average rating and review count per product id."""
    product_ids = list(product_ids)
    summary = {pid: {"average_rating": None, "review_count": 0} for pid in product_ids}
    pipeline = [
        {"$match": {"product_id": {"$in": product_ids}}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    for row in db["review"].aggregate(pipeline):
        summary[row["_id"]] = {
            "average_rating": _round_rating(row["avg"]),
            "review_count": row["count"],
        }
    return summary


class ReviewService:
    def __init__(self, db):
        self.db = db

    def _user_brief(self, user_id: str, with_email: bool = False) -> Optional[dict]:
        user = self.db["user"].find_one({"_id": oid(user_id)})
        if not user:
            return None
        brief = {"id": str(user["_id"]), "name": user.get("name")}
        if with_email:
            brief["email"] = user["email"]
        return brief

    def _present(self, review: dict, with_email: bool = False) -> dict:
        data = serialize(review)
        data["user"] = self._user_brief(review["user_id"], with_email)
        return data

    def _owned(self, user_id: str, review_id: str, action: str) -> dict:
        review = self.db["review"].find_one({"_id": oid(review_id)})
        if not review:
            raise NotFoundError("Review not found")
        if review["user_id"] != user_id:
            raise ForbiddenError(f"You can only {action} your own reviews")
        return review

    def create_review(self, user_id: str, product_id: str, rating: int, comment: Optional[str] = None) -> dict:
        if not self.db["product"].find_one({"_id": oid(product_id)}):
            raise NotFoundError("Product not found")

        if self.db["review"].find_one({"product_id": product_id, "user_id": user_id}):
            raise ConflictError("You have already reviewed this product")

        purchased = self.db["order"].find_one({
            "user_id": user_id,
            "status": OrderStatus.DELIVERED.value,
            "items.product_id": product_id,
        })
        if not purchased:
            raise BadRequestError("You can only review products you have purchased")

        if rating not in RATINGS:
            raise BadRequestError("Rating must be between 1 and 5")

        try:
            review_id = create_document(self.db, "review", Review(
                product_id=product_id, user_id=user_id, rating=rating, comment=comment))
        except DuplicateKeyError:
            raise ConflictError("You have already reviewed this product")
        logger.info("User %s reviewed product %s (%d)", user_id, product_id, rating)
        return self._present(self.db["review"].find_one({"_id": oid(review_id)}), with_email=True)

    def rating_stats(self, product_id: str) -> dict:
        distribution = {r: 0 for r in RATINGS}
        pipeline = [
            {"$match": {"product_id": product_id}},
            {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
        ]
        for row in self.db["review"].aggregate(pipeline):
            distribution[row["_id"]] = row["count"]

        total = sum(distribution.values())
        average = sum(r * c for r, c in distribution.items()) / total if total else 0
        return {
            "total_reviews": total,
            "average_rating": _round_rating(average),
            "rating_distribution": distribution,
        }

    def get_product_reviews(self, product_id: str, page: int = 1, limit: int = 10,
                            rating: Optional[int] = None) -> dict:
        query = {"product_id": product_id}
        if rating:
            query["rating"] = rating

        cursor = (self.db["review"].find(query)
                  .sort("created_at", -1)
                  .skip((page - 1) * limit)
                  .limit(limit))
        return {
            "reviews": [self._present(r) for r in cursor],
            "pagination": pagination(page, limit, self.db["review"].count_documents(query)),
            "stats": self.rating_stats(product_id),
        }

    def get_review_by_id(self, review_id: str) -> dict:
        review = self.db["review"].find_one({"_id": oid(review_id)})
        if not review:
            raise NotFoundError("Review not found")
        data = self._present(review)
        product = self.db["product"].find_one({"_id": oid(review["product_id"])})
        data["product"] = product and {"id": str(product["_id"]), "name": product["name"], "slug": product["slug"]}
        return data

    def get_user_reviews(self, user_id: str) -> List[dict]:
        reviews = []
        for review in self.db["review"].find({"user_id": user_id}).sort("created_at", -1):
            data = serialize(review)
            product = self.db["product"].find_one({"_id": oid(review["product_id"])})
            data["product"] = product and {"id": str(product["_id"]), "name": product["name"], "slug": product["slug"]}
            reviews.append(data)
        return reviews

    def update_review(self, user_id: str, review_id: str, data: dict) -> dict:
        review = self._owned(user_id, review_id, "update")
        updates = {k: v for k, v in data.items() if k in ("rating", "comment") and v is not None}
        if "rating" in updates and updates["rating"] not in RATINGS:
            raise BadRequestError("Rating must be between 1 and 5")
        updates["updated_at"] = utcnow()
        updated = self.db["review"].find_one_and_update(
            {"_id": review["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER,
        )
        return self._present(updated)

    def delete_review(self, user_id: str, review_id: str) -> dict:
        review = self._owned(user_id, review_id, "delete")
        self.db["review"].delete_one({"_id": review["_id"]})
        return {"message": "Review deleted successfully"}
