"""
Catalog store: categories, products and product images.

Products and categories are addressed by id or by a unique slug derived
from their name.
"""

import logging
import re
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, pagination, serialize, utcnow
from errors import BadRequestError, ConflictError, NotFoundError
from reviews import rating_summary
from schemas import Category, Product, ProductImage

logger = logging.getLogger(__name__)

MAX_SLUG_ATTEMPTS = 100
MAX_PAGE_SIZE = 100
SORTS = {
    "newest": [("created_at", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "name": [("name", 1)],
}


def generate_slug(text: str) -> str:
    slug = text.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-") or "item"


def unique_slug(db, collection_name: str, text: str) -> str:
    base = generate_slug(text)
    candidate = base
    for counter in range(1, MAX_SLUG_ATTEMPTS + 1):
        if not db[collection_name].find_one({"slug": candidate}):
            return candidate
        candidate = f"{base}-{counter}"
    raise ConflictError(f"Could not generate a unique slug for '{text}'")


def _sort_for(sort_by: Optional[str]) -> list:
    return SORTS.get(sort_by or "newest", SORTS["newest"])


class CategoryService:
    def __init__(self, db):
        self.db = db

    def _get(self, query: dict) -> dict:
        category = self.db["category"].find_one(query)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _ensure_parent(self, parent_id: Optional[str]) -> None:
        if parent_id and not self.db["category"].find_one({"_id": oid(parent_id)}):
            raise NotFoundError("Parent category not found")

    def _detail(self, category: dict) -> dict:
        data = serialize(category)
        parent_id = category.get("parent_id")
        data["parent"] = serialize(self.db["category"].find_one({"_id": oid(parent_id)})) if parent_id else None
        data["children"] = [serialize(c) for c in self.db["category"].find({"parent_id": data["id"]}).sort("name", 1)]
        data["product_count"] = self.db["product"].count_documents({"category_id": data["id"]})
        return data

    def create_category(self, data: dict) -> dict:
        self._ensure_parent(data.get("parent_id"))
        category = Category(slug=unique_slug(self.db, "category", data["name"]), **data)
        try:
            category_id = create_document(self.db, "category", category)
        except DuplicateKeyError:
            raise ConflictError("A category with this slug already exists")
        return self._detail(self._get({"_id": oid(category_id)}))

    def get_all_categories(self, include_products: bool = False) -> List[dict]:
        categories = [serialize(c) for c in self.db["category"].find().sort("name", 1)]
        children = {}
        for c in categories:
            children.setdefault(c.get("parent_id"), []).append(c)

        def products_for(category_id):
            cursor = self.db["product"].find({"category_id": category_id}).limit(5)
            return [serialize(p) for p in cursor]

        def node(c, depth):
            item = dict(c)
            if depth < 2:
                item["children"] = [node(child, depth + 1) for child in children.get(c["id"], [])]
            if include_products and depth < 2:
                item["products"] = products_for(c["id"])
            return item

        return [node(c, 0) for c in children.get(None, [])]

    def get_category_by_id(self, category_id: str) -> dict:
        return self._detail(self._get({"_id": oid(category_id)}))

    def get_category_by_slug(self, slug: str) -> dict:
        return self._detail(self._get({"slug": slug}))

    def update_category(self, category_id: str, data: dict) -> dict:
        category = self._get({"_id": oid(category_id)})
        # parent_id=None moves the category to the root
        updates = {k: v for k, v in data.items() if v is not None or k == "parent_id"}

        # Only the direct parent is compared; deeper cycles are not detected
        if updates.get("parent_id") == category_id:
            raise BadRequestError("Category cannot be its own parent")
        if updates.get("name") and updates["name"] != category["name"]:
            updates["slug"] = unique_slug(self.db, "category", updates["name"])
        self._ensure_parent(updates.get("parent_id"))

        updates["updated_at"] = utcnow()
        try:
            updated = self.db["category"].find_one_and_update(
                {"_id": category["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("A category with this slug already exists")
        return self._detail(updated)

    def delete_category(self, category_id: str) -> dict:
        category = self._get({"_id": oid(category_id)})
        if self.db["category"].count_documents({"parent_id": category_id}):
            raise BadRequestError("Cannot delete category with subcategories. Delete or move subcategories first.")
        product_count = self.db["product"].count_documents({"category_id": category_id})
        if product_count:
            raise BadRequestError(
                f"Cannot delete category with {product_count} products. Move or delete products first."
            )
        self.db["category"].delete_one({"_id": category["_id"]})
        return {"message": "Category deleted successfully"}

    def get_category_products(self, category_id: str, page: int = 1, limit: int = 20,
                              sort_by: str = "newest") -> dict:
        self._get({"_id": oid(category_id)})
        return ProductService(self.db).get_all_products(
            category_id=category_id, page=page, limit=limit, sort_by=sort_by,
        )


class ProductService:
    def __init__(self, db):
        self.db = db

    def _get(self, query: dict) -> dict:
        product = self.db["product"].find_one(query)
        if not product:
            raise NotFoundError("Product not found")
        return product

    def _ensure_category(self, category_id: Optional[str]) -> None:
        if category_id and not self.db["category"].find_one({"_id": oid(category_id)}):
            raise NotFoundError("Category not found")

    def _images(self, product_id: str) -> List[dict]:
        return [serialize(i) for i in self.db["product_image"].find({"product_id": product_id}).sort("order", 1)]

    def _present(self, products: List[dict]) -> List[dict]:
        ids = [str(p["_id"]) for p in products]
        ratings = rating_summary(self.db, ids)
        category_ids = {p["category_id"] for p in products if p.get("category_id")}
        categories = {
            str(c["_id"]): serialize(c)
            for c in self.db["category"].find({"_id": {"$in": [oid(c) for c in category_ids]}})
        }

        result = []
        for product in products:
            data = serialize(product)
            data["category"] = categories.get(product.get("category_id"))
            data["images"] = self._images(data["id"])
            data.update(ratings[data["id"]])
            result.append(data)
        return result

    def create_product(self, data: dict) -> dict:
        self._ensure_category(data.get("category_id"))
        product = Product(slug=unique_slug(self.db, "product", data["name"]), **data)
        try:
            product_id = create_document(self.db, "product", product)
        except DuplicateKeyError:
            raise ConflictError("A product with this slug already exists")
        logger.info("Product %s created with stock %d", product_id, product.stock)
        return self.get_product_by_id(product_id)

    def get_all_products(self, search: Optional[str] = None, category_id: Optional[str] = None,
                         min_price: Optional[int] = None, max_price: Optional[int] = None,
                         in_stock: bool = False, sort_by: Optional[str] = None,
                         page: int = 1, limit: int = 20) -> dict:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        query = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}]
        if category_id:
            query["category_id"] = category_id
        if min_price is not None or max_price is not None:
            query["price"] = {}
            if min_price is not None:
                query["price"]["$gte"] = min_price
            if max_price is not None:
                query["price"]["$lte"] = max_price
        if in_stock:
            query["stock"] = {"$gt": 0}

        cursor = (self.db["product"].find(query)
                  .sort(_sort_for(sort_by))
                  .skip((page - 1) * limit)
                  .limit(limit))
        return {
            "products": self._present(list(cursor)),
            "pagination": pagination(page, limit, self.db["product"].count_documents(query)),
        }

    def get_product_by_id(self, product_id: str) -> dict:
        return self._present([self._get({"_id": oid(product_id)})])[0]

    def get_product_by_slug(self, slug: str) -> dict:
        return self._present([self._get({"slug": slug})])[0]

    def update_product(self, product_id: str, data: dict) -> dict:
        product = self._get({"_id": oid(product_id)})
        updates = {k: v for k, v in data.items() if v is not None}

        if updates.get("name") and updates["name"] != product["name"]:
            updates["slug"] = unique_slug(self.db, "product", updates["name"])
        self._ensure_category(updates.get("category_id"))
        if updates.get("stock", 0) < 0 or updates.get("price", 0) < 0:
            raise BadRequestError("Price and stock cannot be negative")

        updates["updated_at"] = utcnow()
        try:
            self.db["product"].update_one({"_id": product["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            raise ConflictError("A product with this slug already exists")
        return self.get_product_by_id(product_id)

    def delete_product(self, product_id: str) -> dict:
        product = self._get({"_id": oid(product_id)})
        if self.db["order"].count_documents({"items.product_id": product_id}):
            raise BadRequestError(
                "Cannot delete product that has been ordered. Consider marking it as out of stock instead."
            )
        self.db["cart_item"].delete_many({"product_id": product_id})
        self.db["product_image"].delete_many({"product_id": product_id})
        self.db["product"].delete_one({"_id": product["_id"]})
        logger.info("Product %s deleted", product_id)
        return {"message": "Product deleted successfully"}

    # ----- Images -----

    def add_product_image(self, product_id: str, data: dict) -> dict:
        self._get({"_id": oid(product_id)})
        image = ProductImage(product_id=product_id, **data)
        if image.is_primary:
            self.db["product_image"].update_many({"product_id": product_id}, {"$set": {"is_primary": False}})
        image_id = create_document(self.db, "product_image", image)
        return serialize(self.db["product_image"].find_one({"_id": oid(image_id)}))

    def _get_image(self, image_id: str) -> dict:
        image = self.db["product_image"].find_one({"_id": oid(image_id)})
        if not image:
            raise NotFoundError("Image not found")
        return image

    def delete_product_image(self, image_id: str) -> dict:
        image = self._get_image(image_id)
        self.db["product_image"].delete_one({"_id": image["_id"]})
        return {"message": "Image deleted successfully"}

    def set_primary_image(self, image_id: str) -> dict:
        image = self._get_image(image_id)
        self.db["product_image"].update_many({"product_id": image["product_id"]}, {"$set": {"is_primary": False}})
        updated = self.db["product_image"].find_one_and_update(
            {"_id": image["_id"]},
            {"$set": {"is_primary": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(updated)
