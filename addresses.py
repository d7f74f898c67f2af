from typing import List

from pymongo import ReturnDocument

from database import create_document, get_documents, oid, serialize, utcnow
from errors import NotFoundError
from schemas import Address


class AddressService:
    """Saved shipping addresses. At most one per user is flagged is_default."""

    def __init__(self, db):
        self.db = db

    def _owned(self, user_id: str, address_id: str) -> dict:
        address = self.db["address"].find_one({"_id": oid(address_id), "user_id": user_id})
        if not address:
            raise NotFoundError("Address not found")
        return address

    def _unset_defaults(self, user_id: str, exclude=None) -> None:
        query = {"user_id": user_id, "is_default": True}
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        self.db["address"].update_many(query, {"$set": {"is_default": False, "updated_at": utcnow()}})

    def create_address(self, user_id: str, data: dict) -> dict:
        address = Address(user_id=user_id, **data)
        if address.is_default:
            self._unset_defaults(user_id)
        address_id = create_document(self.db, "address", address)
        return serialize(self.db["address"].find_one({"_id": oid(address_id)}))

    def get_user_addresses(self, user_id: str) -> List[dict]:
        addresses = get_documents(self.db, "address", {"user_id": user_id},
                                  sort=[("is_default", -1), ("created_at", -1)])
        return [serialize(a) for a in addresses]

    def get_address_by_id(self, user_id: str, address_id: str) -> dict:
        return serialize(self._owned(user_id, address_id))

    def update_address(self, user_id: str, address_id: str, data: dict) -> dict:
        address = self._owned(user_id, address_id)
        updates = {k: v for k, v in data.items() if v is not None and k not in ("user_id", "id", "_id")}
        if updates.get("is_default"):
            self._unset_defaults(user_id, exclude=address["_id"])
        updates["updated_at"] = utcnow()
        updated = self.db["address"].find_one_and_update(
            {"_id": address["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER,
        )
        return serialize(updated)

    def delete_address(self, user_id: str, address_id: str) -> dict:
        address = self._owned(user_id, address_id)
        self.db["address"].delete_one({"_id": address["_id"]})
        return {"message": "Address deleted successfully"}
