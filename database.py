"""
MongoDB access for the storefront.

Each pydantic model in schemas.py maps to one collection named after the
lowercase class name. Uniqueness rules live in ensure_indexes() so they are
enforced by the server, not only by the services.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union

from bson.objectid import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import BadRequestError

logger = logging.getLogger(__name__)

client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    # BSON datetimes are read back naive, so everything is stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise BadRequestError("Invalid id")


def serialize(doc):
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index("category_id")
    database["category"].create_index("slug", unique=True)
    database["product_image"].create_index("product_id")
    database["cart"].create_index("user_id", unique=True)
    database["cart_item"].create_index([("cart_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["order"].create_index("user_id")
    database["payment"].create_index("order_id", unique=True)
    database["payment"].create_index("transaction_id", unique=True)
    database["address"].create_index("user_id")
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["password_reset_token"].create_index("user_id", unique=True)
    database["password_reset_token"].create_index("token_hash", unique=True)


class Transaction:
    """Handle given to a callback run by run_in_transaction().

    ``session`` is the pymongo ClientSession to pass to every write, or None when
    the deployment has no multi-document transactions. In that case the writes
    land immediately and each one registers its inverse with on_rollback().
    """

    def __init__(self, session=None):
        self.session = session
        self._compensations = []

    def on_rollback(self, fn: Callable, *args, **kwargs) -> None:
        # The server discards uncommitted writes itself
        if self.session is None:
            self._compensations.append((fn, args, kwargs))

    def rollback(self) -> None:
        while self._compensations:
            fn, args, kwargs = self._compensations.pop()
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("Compensating write %s failed", getattr(fn, "__name__", fn))


def run_in_transaction(database, callback: Callable[[Transaction], Any], transactional: Optional[bool] = None):
    """Run ``callback`` as one atomic unit and return its result.

    With server transactions the callback goes through
    ClientSession.with_transaction, which retries it on transient write
    conflicts and aborts it on any other exception.
    """
    if transactional is None:
        transactional = config.DATABASE_TRANSACTIONS

    if transactional:
        with database.client.start_session() as session:
            return session.with_transaction(lambda s: callback(Transaction(s)))

    tx = Transaction()
    try:
        return callback(tx)
    except Exception:
        tx.rollback()
        raise
