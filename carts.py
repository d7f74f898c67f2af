import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, serialize, utcnow
from errors import BadRequestError, NotFoundError
from schemas import CartItem

logger = logging.getLogger(__name__)


class CartService:
    """Per-user basket. Stock is checked when items are written, not when read."""

    def __init__(self, db):
        self.db = db

    def _ensure_cart(self, user_id: str) -> dict:
        now = utcnow()
        return self.db["cart"].find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"user_id": user_id, "created_at": now, "updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _owned_item(self, user_id: str, item_id: str) -> dict:
        item = self.db["cart_item"].find_one({"_id": oid(item_id)})
        # Another user's item looks exactly like a missing one
        if not item or not self.db["cart"].find_one({"_id": oid(item["cart_id"]), "user_id": user_id}):
            raise NotFoundError("Cart item not found")
        return item

    def _with_product(self, item: dict) -> dict:
        data = serialize(item)
        product = self.db["product"].find_one({"_id": oid(item["product_id"])})
        data["product"] = serialize(product)
        return data

    def get_or_create_cart(self, user_id: str) -> dict:
        cart = self._ensure_cart(user_id)
        items = list(self.db["cart_item"].find({"cart_id": str(cart["_id"])}).sort("created_at", 1))

        product_ids = [oid(i["product_id"]) for i in items]
        products = {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": product_ids}})}
        images = {
            img["product_id"]: img["url"]
            for img in self.db["product_image"].find(
                {"product_id": {"$in": list(products)}, "is_primary": True})
        }

        lines = []
        total = 0
        item_count = 0
        for item in items:
            product = products.get(item["product_id"])
            if not product:
                continue
            subtotal = product["price"] * item["quantity"]
            total += subtotal
            item_count += item["quantity"]
            lines.append({
                "id": str(item["_id"]),
                "product_id": item["product_id"],
                "name": product["name"],
                "slug": product["slug"],
                "price": product["price"],
                "stock": product["stock"],
                "image_url": images.get(item["product_id"]),
                "quantity": item["quantity"],
                "subtotal": subtotal,
            })

        return {
            "id": str(cart["_id"]),
            "user_id": user_id,
            "items": lines,
            "total": total,
            "item_count": item_count,
        }

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> dict:
        if quantity < 1:
            raise BadRequestError("Quantity must be at least 1")
        product = self.db["product"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        if product["stock"] < quantity:
            raise BadRequestError(f"Insufficient stock available. Only {product['stock']} left")

        cart = self._ensure_cart(user_id)
        cart_id = str(cart["_id"])
        existing = self.db["cart_item"].find_one({"cart_id": cart_id, "product_id": product_id})

        if existing:
            new_quantity = existing["quantity"] + quantity
            if new_quantity > product["stock"]:
                raise BadRequestError(
                    f"Cannot add {quantity} more. Only {product['stock'] - existing['quantity']} available"
                )
            item = self.db["cart_item"].find_one_and_update(
                {"_id": existing["_id"]},
                {"$set": {"quantity": new_quantity, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        else:
            try:
                item_id = create_document(self.db, "cart_item", CartItem(
                    cart_id=cart_id, product_id=product_id, quantity=quantity))
            except DuplicateKeyError:
                # Lost a race with a parallel add of the same product
                return self.add_to_cart(user_id, product_id, quantity)
            item = self.db["cart_item"].find_one({"_id": oid(item_id)})

        logger.debug("Cart %s: product %s quantity now %d", cart_id, product_id, item["quantity"])
        return self._with_product(item)

    def update_cart_item(self, user_id: str, item_id: str, quantity: int) -> dict:
        item = self._owned_item(user_id, item_id)

        if quantity < 0:
            raise BadRequestError("Quantity cannot be negative")
        if quantity == 0:
            self.db["cart_item"].delete_one({"_id": item["_id"]})
            return {"message": "Item removed from cart"}

        product = self.db["product"].find_one({"_id": oid(item["product_id"])})
        stock = product["stock"] if product else 0
        if quantity > stock:
            raise BadRequestError(f"Only {stock} units available in stock")

        updated = self.db["cart_item"].find_one_and_update(
            {"_id": item["_id"]},
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._with_product(updated)

    def remove_from_cart(self, user_id: str, item_id: str) -> dict:
        item = self._owned_item(user_id, item_id)
        self.db["cart_item"].delete_one({"_id": item["_id"]})
        return {"message": "Item removed from cart"}

    def clear_cart(self, user_id: str) -> dict:
        cart = self.db["cart"].find_one({"user_id": user_id})
        if not cart:
            raise NotFoundError("Cart not found")
        self.db["cart_item"].delete_many({"cart_id": str(cart["_id"])})
        return {"message": "Cart cleared successfully"}
