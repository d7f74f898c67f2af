import re
from typing import Optional

from bson.objectid import ObjectId
from pymongo import ReturnDocument

from accounts import public_user
from database import oid, pagination, serialize, utcnow
from errors import BadRequestError, NotFoundError
from orders import OrderService
from schemas import OrderStatus, Role

LOW_STOCK_THRESHOLD = 10
REVENUE_STATUSES = [OrderStatus.PAID.value, OrderStatus.DELIVERED.value]


def _user_brief(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    return {"id": str(user["_id"]), "email": user["email"], "name": user.get("name")}


class AdminService:
    """Back-office queries. Callers must have passed the admin role gate."""

    def __init__(self, db, notifier=None):
        self.db = db
        self.orders = OrderService(db, notifier)

    def _low_stock(self, limit: Optional[int] = None) -> list:
        cursor = self.db["product"].find({"stock": {"$lte": LOW_STOCK_THRESHOLD}}).sort("stock", 1)
        if limit:
            cursor = cursor.limit(limit)
        return [
            {"id": str(p["_id"]), "name": p["name"], "stock": p["stock"], "price": p["price"]}
            for p in cursor
        ]

    def get_dashboard_stats(self) -> dict:
        revenue = list(self.db["order"].aggregate([
            {"$match": {"status": {"$in": REVENUE_STATUSES}}},
            {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
        ]))
        by_status = {
            row["_id"]: row["count"]
            for row in self.db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        }

        recent = []
        for order in self.db["order"].find().sort("created_at", -1).limit(10):
            data = serialize(order)
            data["user"] = _user_brief(self.db["user"].find_one({"_id": oid(order["user_id"])}))
            data["item_count"] = len(order["items"])
            recent.append(data)

        return {
            "total_users": self.db["user"].count_documents({}),
            "total_products": self.db["product"].count_documents({}),
            "total_orders": self.db["order"].count_documents({}),
            "total_revenue": revenue[0]["total"] if revenue else 0,
            "recent_orders": recent,
            "low_stock_products": self._low_stock(limit=10),
            "orders_by_status": by_status,
        }

    def get_all_orders(self, page: int = 1, limit: int = 20, status: Optional[str] = None,
                       search: Optional[str] = None) -> dict:
        query = {}
        if status:
            query["status"] = status
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            user_ids = [str(u["_id"]) for u in self.db["user"].find({"email": pattern})]
            clauses = [{"user_id": {"$in": user_ids}}]
            if ObjectId.is_valid(search):
                clauses.append({"_id": ObjectId(search)})
            query["$or"] = clauses

        orders = []
        cursor = self.db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        for order in cursor:
            data = self.orders.present(order)
            data["user"] = _user_brief(self.db["user"].find_one({"_id": oid(order["user_id"])}))
            orders.append(data)
        return {
            "orders": orders,
            "pagination": pagination(page, limit, self.db["order"].count_documents(query)),
        }

    def update_order_status(self, order_id: str, status, tracking_number: Optional[str] = None) -> dict:
        return self.orders.update_order_status(order_id, status, tracking_number)

    def get_all_users(self, page: int = 1, limit: int = 20, role: Optional[str] = None,
                      search: Optional[str] = None) -> dict:
        query = {}
        if role:
            query["role"] = role
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"email": pattern}, {"name": pattern}]

        users = []
        cursor = self.db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        for user in cursor:
            data = public_user(user)
            data["order_count"] = self.db["order"].count_documents({"user_id": data["id"]})
            data["review_count"] = self.db["review"].count_documents({"user_id": data["id"]})
            users.append(data)
        return {
            "users": users,
            "pagination": pagination(page, limit, self.db["user"].count_documents(query)),
        }

    def update_user_role(self, user_id: str, role) -> dict:
        try:
            role = Role(role).value
        except ValueError:
            raise BadRequestError(f"Invalid role: {role}")
        user = self.db["user"].find_one_and_update(
            {"_id": oid(user_id)},
            {"$set": {"role": role, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            raise NotFoundError("User not found")
        return {"id": str(user["_id"]), "email": user["email"], "name": user.get("name"), "role": user["role"]}

    def get_product_analytics(self) -> dict:
        top = list(self.db["order"].aggregate([
            {"$unwind": "$items"},
            {"$group": {
                "_id": "$items.product_id",
                "total_sold": {"$sum": "$items.quantity"},
                "order_count": {"$sum": 1},
            }},
            {"$sort": {"total_sold": -1}},
            {"$limit": 10},
        ]))
        products = {
            str(p["_id"]): {"id": str(p["_id"]), "name": p["name"], "price": p["price"], "stock": p["stock"]}
            for p in self.db["product"].find({"_id": {"$in": [oid(row["_id"]) for row in top]}})
        }
        sold = list(self.db["order"].aggregate([
            {"$unwind": "$items"},
            {"$group": {"_id": None, "quantity": {"$sum": "$items.quantity"}}},
        ]))
        return {
            "top_selling_products": [
                {"product": products.get(row["_id"]), "total_sold": row["total_sold"], "order_count": row["order_count"]}
                for row in top
            ],
            "low_stock_products": self._low_stock(),
            "total_items_sold": sold[0]["quantity"] if sold else 0,
        }
