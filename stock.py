"""
Stock adjustment for invoice line items

Each item is matched to one of the owner's products, first by product_id and
then by exact (trimmed, case-sensitive) name. Unmatched items are skipped.
Stock has no floor and may go negative.

The returned ledger records what was actually applied so the caller can
store it on the invoice and reverse it later with restore_ledger().
"""
import logging
from typing import Any, Dict, Iterable, List, Literal

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

logger = logging.getLogger(__name__)

Direction = Literal["deduct", "restore"]


def _product_filter(owner_id: str, product_id: Any) -> Dict[str, Any]:
    if not ObjectId.is_valid(str(product_id)):
        return {}
    return {"_id": ObjectId(str(product_id)), "created_by": owner_id}


def _apply(db: Database, query: Dict[str, Any], change: int):
    return db["product"].find_one_and_update(
        query, {"$inc": {"stock": change}}, return_document=ReturnDocument.AFTER
    )


def adjust_stock(db: Database, owner_id: str, items: Iterable[Dict[str, Any]],
                 direction: Direction) -> List[Dict[str, Any]]:
    multiplier = -1 if direction == "deduct" else 1
    ledger = []
    for item in items:
        quantity = int(item.get("quantity") or 0)
        change = quantity * multiplier
        product = None

        if item.get("product_id"):
            query = _product_filter(owner_id, item["product_id"])
            if query:
                product = _apply(db, query, change)

        name = (item.get("item_name") or "").strip()
        if product is None and name:
            product = _apply(db, {"name": name, "created_by": owner_id}, change)

        if product is None:
            logger.warning("Stock %s skipped: no product for %r", direction, name)
            continue
        logger.info("Stock %s: %r now %s", direction, product["name"], product["stock"])
        ledger.append({"product_id": str(product["_id"]), "quantity": -change})
    return ledger


def restore_ledger(db: Database, owner_id: str, ledger: Iterable[Dict[str, Any]]) -> None:
    """Undo a ledger produced by a deduct."""
    for entry in ledger:
        query = _product_filter(owner_id, entry["product_id"])
        if not query:
            continue
        # ledger quantities are the amounts removed from stock
        if _apply(db, query, int(entry["quantity"])) is None:
            logger.warning("Stock restore skipped: product %s is gone", entry["product_id"])
