"""
Database helpers

Thin layer over pymongo shared by every module. Collection names are the
lowercased schema class names ("invoice", "client", ...).

Soft-deleted documents carry `removed: true`; `visible()` is the single place
that filter is built, and every owner-scoped lookup goes through `owned()`.
"""
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import Unavailable, ValidationFailed

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db = client[config.DATABASE_NAME] if client is not None else None


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise Unavailable("Database not configured")
    return db


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything stored is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(obj_id: Any) -> ObjectId:
    if isinstance(obj_id, ObjectId):
        return obj_id
    try:
        return ObjectId(str(obj_id))
    except Exception:
        raise ValidationFailed("Invalid ID")


def serialize_doc(doc: Any) -> Any:
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


def visible(filter_dict: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    query = dict(filter_dict or {})
    query["removed"] = {"$ne": True}
    return query


def owned(owner_id: str, filter_dict: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    query = dict(filter_dict or {})
    query["created_by"] = owner_id
    return query


def contains(text: str) -> Dict[str, str]:
    """Case-insensitive substring match; user input is never a regex."""
    return {"$regex": re.escape(text), "$options": "i"}


def as_number(text: str) -> Optional[int]:
    """Search text read as a document number, or None for free text.

    Only plain ASCII digits short enough for a BSON int64 qualify; "²" and
    twenty-digit strings stay free text.
    """
    text = (text or "").strip()
    if text.isascii() and text.isdigit() and len(text) <= 18:
        return int(text)
    return None


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def paginate(db: Database, collection_name: str, query: Dict[str, Any], page: int, limit: int,
             sort: Optional[List[Tuple[str, int]]] = None) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    collection = db[collection_name]
    cursor = collection.find(query).sort(sort or [("created_at", DESCENDING)])
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    total = collection.count_documents(query)
    return docs, {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["client"].create_index([("created_by", ASCENDING), ("email", ASCENDING)], unique=True)
    db["client"].create_index([("portal_token", ASCENDING)], unique=True, sparse=True)
    for name in ("invoice", "quote"):
        db[name].create_index([("created_by", ASCENDING), ("number", DESCENDING)])
    db["settings"].create_index([("user_id", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", db.name)
