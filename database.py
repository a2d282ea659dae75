"""
MongoDB access helpers.

Collections are created on first insert. ``get_database`` is the single
place a client is built; services receive the ``Database`` they work on.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
import errors


@lru_cache(maxsize=1)
def get_database() -> Database:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]
    ensure_indexes(db)
    return db


def ensure_indexes(db: Database) -> None:
    # one return per order item
    db.returns.create_index([("order_item_id", ASCENDING)], unique=True)
    db.payments.create_index([("order_id", ASCENDING), ("payment_intent_id", ASCENDING)])
    db.order_items.create_index([("order_id", ASCENDING)])
    db.stocks.create_index([("product_id", ASCENDING)])


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise errors.ValidationError("Invalid id")


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(db: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db: Database, collection: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: str = "created_at", direction: int = -1) -> List[dict]:
    cursor = db[collection].find(filter_dict or {}).sort(sort, direction)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(db: Database, collection: str, id_str: str, label: str) -> dict:
    doc = db[collection].find_one({"_id": to_obj_id(id_str)})
    if not doc:
        raise errors.NotFoundError(f"{label} not found")
    return doc
