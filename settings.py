"""Per-user company settings. One document per user, created on first read."""
from typing import Any, Dict

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, utcnow
from schemas import Settings, SettingsUpdate


def find_settings(db: Database, user_id: str) -> Dict[str, Any]:
    """Settings for a user without creating them; defaults when missing."""
    doc = db["settings"].find_one({"user_id": user_id})
    return doc or Settings(user_id=user_id).model_dump()


def get_settings(db: Database, user_id: str) -> Dict[str, Any]:
    doc = db["settings"].find_one({"user_id": user_id})
    if doc is None:
        create_document(db, "settings", Settings(user_id=user_id))
        doc = db["settings"].find_one({"user_id": user_id})
    return doc


def update_settings(db: Database, user_id: str, payload: SettingsUpdate) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    defaults = Settings(user_id=user_id).model_dump()
    defaults.pop("user_id")
    for key in changes:
        defaults.pop(key, None)
    now = utcnow()
    defaults["created_at"] = now
    return db["settings"].find_one_and_update(
        {"user_id": user_id},
        {"$set": {**changes, "updated_at": now}, "$setOnInsert": defaults},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
