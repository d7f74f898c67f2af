"""
Order placement and cancellation.

Stock only moves here: it is taken when an order is placed and given back
when a PENDING order is cancelled. Every stock or status change is a single
conditional update (``stock >= qty``, ``status == PENDING``) executed inside
run_in_transaction(), so two requests racing for the last units, or for the
same order, cannot both win.
"""

import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Iterable, List, Optional

from bson.objectid import ObjectId
from pymongo import ReturnDocument

from database import create_document, oid, run_in_transaction, serialize, utcnow
from errors import (
    BadRequestError,
    InsufficientStockError,
    NotFoundError,
    UnauthorizedError,
)
from notifications import ORDER_CONFIRMATION, dispatch
from schemas import Order, OrderItem, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

ESTIMATED_DELIVERY_DAYS = 7
NOT_CANCELLABLE = (
    OrderStatus.PAID.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)

ADDRESS_SNAPSHOT_FIELDS = (
    "full_name", "phone", "address_line1", "address_line2",
    "city", "state", "postal_code", "country",
)


def _item_value(item, key):
    return item[key] if isinstance(item, dict) else getattr(item, key)


def merge_lines(items: Iterable) -> "OrderedDict[str, int]":
    """Collapse repeated products into one line, keeping first-seen order."""
    lines = OrderedDict()
    for item in items:
        product_id = str(_item_value(item, "product_id"))
        quantity = int(_item_value(item, "quantity"))
        if quantity < 1:
            raise BadRequestError("Quantity must be at least 1")
        lines[product_id] = lines.get(product_id, 0) + quantity
    return lines


class OrderService:
    def __init__(self, db, notifier=None):
        self.db = db
        self.notifier = notifier

    # ----- Placement -----

    def create_order(self, user_id: str, items: Iterable, shipping_address_id: Optional[str] = None) -> dict:
        address = None
        if shipping_address_id:
            address = self.db["address"].find_one({"_id": oid(shipping_address_id), "user_id": user_id})
            if not address:
                raise NotFoundError("Invalid shipping address")

        lines = merge_lines(items)
        if not lines:
            raise BadRequestError("Order must contain at least one item")

        products = {
            str(p["_id"]): p
            for p in self.db["product"].find({"_id": {"$in": [oid(pid) for pid in lines]}})
        }

        order_items: List[OrderItem] = []
        for product_id, quantity in lines.items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if product["stock"] < quantity:
                raise InsufficientStockError(product_id, product["name"], product["stock"], quantity)
            order_items.append(OrderItem(
                product_id=product_id,
                name=product["name"],
                price=product["price"],
                quantity=quantity,
            ))

        order = Order(
            user_id=user_id,
            items=order_items,
            total_amount=sum(i.price * i.quantity for i in order_items),
            shipping_address_id=shipping_address_id,
            shipping_address=self._address_snapshot(address),
        )

        def place(tx):
            for item in order_items:
                self._take_stock(tx, item)
            order_id = create_document(self.db, "order", order, session=tx.session)
            tx.on_rollback(self.db["order"].delete_one, {"_id": ObjectId(order_id)})
            return order_id

        order_id = run_in_transaction(self.db, place)
        logger.info("Order %s placed by user %s: %d line(s), total %d",
                    order_id, user_id, len(order_items), order.total_amount)

        created = self.present(self.db["order"].find_one({"_id": ObjectId(order_id)}))
        self._notify_created(user_id, created)
        return created

    def create_order_from_cart(self, user_id: str, shipping_address_id: Optional[str] = None) -> dict:
        cart = self.db["cart"].find_one({"user_id": user_id})
        cart_items = list(self.db["cart_item"].find({"cart_id": str(cart["_id"])})) if cart else []
        if not cart_items:
            raise BadRequestError("Cart is empty")

        order = self.create_order(user_id, cart_items, shipping_address_id)

        self.db["cart_item"].delete_many({"_id": {"$in": [i["_id"] for i in cart_items]}})
        return order

    def _take_stock(self, tx, item: OrderItem) -> None:
        product_oid = ObjectId(item.product_id)
        updated = self.db["product"].find_one_and_update(
            {"_id": product_oid, "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": utcnow()}},
            session=tx.session,
        )
        if updated is None:
            current = self.db["product"].find_one({"_id": product_oid}, session=tx.session)
            if current is None:
                raise NotFoundError(f"Product {item.product_id} not found")
            logger.warning("Stock for %s sold out before commit: available %d, requested %d",
                           item.product_id, current["stock"], item.quantity)
            raise InsufficientStockError(item.product_id, item.name, current["stock"], item.quantity)
        tx.on_rollback(self._give_back_stock, item.product_id, item.quantity)

    def _give_back_stock(self, product_id: str, quantity: int, session=None) -> None:
        self.db["product"].update_one(
            {"_id": ObjectId(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            session=session,
        )

    @staticmethod
    def _address_snapshot(address) -> Optional[dict]:
        if not address:
            return None
        return {k: address.get(k) for k in ADDRESS_SNAPSHOT_FIELDS}

    def _notify_created(self, user_id: str, order: dict) -> None:
        try:
            user = self.db["user"].find_one({"_id": ObjectId(user_id)})
        except Exception:
            logger.exception("Could not look up user %s for order confirmation", user_id)
            return
        dispatch(self.notifier, user and user.get("email"), ORDER_CONFIRMATION, {
            "order_id": order["id"],
            "total_amount": order["total_amount"],
            "status": order["status"],
        })

    # ----- Queries -----

    def get_my_orders(self, user_id: str) -> List[dict]:
        orders = self.db["order"].find({"user_id": user_id}).sort("created_at", -1)
        return [self.present(o) for o in orders]

    def get_order_by_id(self, user_id: str, order_id: str) -> dict:
        order = self._get(order_id)
        if order["user_id"] != user_id:
            raise UnauthorizedError("Unauthorized")
        return self.present(order)

    def _get(self, order_id: str) -> dict:
        order = self.db["order"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def present(self, order: dict) -> dict:
        data = serialize(order)
        data["payment"] = serialize(self.db["payment"].find_one({"order_id": data["id"]}))
        return data

    # ----- Cancellation -----

    @staticmethod
    def _ensure_cancellable(status: str) -> None:
        if status in NOT_CANCELLABLE:
            raise BadRequestError("Cannot cancel orders that are paid, processing, shipped, or delivered")
        if status == OrderStatus.CANCELLED.value:
            raise BadRequestError("Order is already cancelled")

    def cancel_order(self, user_id: str, order_id: str) -> dict:
        order = self._get(order_id)
        if order["user_id"] != user_id:
            raise UnauthorizedError("Unauthorized")
        self._ensure_cancellable(order["status"])

        def cancel(tx):
            orders = self.db["order"]
            cancelled = orders.find_one_and_update(
                {"_id": order["_id"], "status": OrderStatus.PENDING.value},
                {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=tx.session,
            )
            if cancelled is None:
                # Someone moved the order on after we read it
                current = orders.find_one({"_id": order["_id"]}, session=tx.session)
                self._ensure_cancellable(current["status"])
                raise BadRequestError("Order can no longer be cancelled")
            tx.on_rollback(orders.update_one, {"_id": order["_id"]},
                           {"$set": {"status": OrderStatus.PENDING.value}})

            for item in cancelled["items"]:
                self._give_back_stock(item["product_id"], item["quantity"], session=tx.session)
                tx.on_rollback(self.db["product"].update_one, {"_id": ObjectId(item["product_id"])},
                               {"$inc": {"stock": -item["quantity"]}})

            payment = self.db["payment"].find_one_and_update(
                {"order_id": str(order["_id"])},
                {"$set": {"status": PaymentStatus.FAILED.value, "updated_at": utcnow()}},
                session=tx.session,
            )
            if payment is not None:
                tx.on_rollback(self.db["payment"].update_one, {"_id": payment["_id"]},
                               {"$set": {"status": payment["status"]}})

        run_in_transaction(self.db, cancel)
        logger.info("Order %s cancelled by user %s, stock restored", order_id, user_id)
        return {"message": "Order cancelled successfully"}

    # ----- Administration -----

    def update_order_status(self, order_id: str, status, tracking_number: Optional[str] = None) -> dict:
        try:
            status = OrderStatus(status).value
        except ValueError:
            raise BadRequestError(f"Invalid order status: {status}")
        order = self._get(order_id)

        updates = {"status": status, "updated_at": utcnow()}
        if tracking_number:
            updates["tracking_number"] = tracking_number
        if status == OrderStatus.SHIPPED.value and not order.get("estimated_delivery"):
            updates["estimated_delivery"] = utcnow() + timedelta(days=ESTIMATED_DELIVERY_DAYS)

        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER,
        )
        logger.info("Order %s status %s -> %s", order_id, order["status"], status)
        return self.present(updated)
