"""
Sequential document numbers

Invoices and quotes each get their own per-owner counter. The counter lives
in the "counter" collection keyed by "<kind>:<owner>" and is advanced with a
single atomic $inc, so two concurrent creations never read the same value.

A counter that does not exist yet is seeded once:
  - from the owner's highest existing number (next = max + 1), else
  - from the Settings start number (next = start), else
  - from DEFAULT_START_NUMBER.

Once seeded the counter only moves forward. Changing a start number later,
or hard-deleting every quote, does not reseed it; numbers are never handed
out twice, even for documents that no longer exist.
"""
import logging

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from settings import find_settings

logger = logging.getLogger(__name__)

KINDS = {
    "invoice": "invoice_start_number",
    "quote": "quote_start_number",
}


def _seed(db: Database, owner_id: str, kind: str) -> int:
    """Value to store so that the first $inc yields the next number."""
    last = db[kind].find_one({"created_by": owner_id}, sort=[("number", DESCENDING)])
    if last and last.get("number") is not None:
        return int(last["number"])
    settings = find_settings(db, owner_id)
    start = settings.get(KINDS[kind]) or config.DEFAULT_START_NUMBER
    return int(start) - 1


def next_number(db: Database, owner_id: str, kind: str) -> int:
    if kind not in KINDS:
        raise ValueError(f"unknown counter kind: {kind}")
    key = f"{kind}:{owner_id}"
    counters = db["counter"]
    doc = counters.find_one_and_update(
        {"_id": key}, {"$inc": {"seq": 1}}, return_document=ReturnDocument.AFTER
    )
    if doc is None:
        seed = _seed(db, owner_id, kind)
        try:
            counters.insert_one({"_id": key, "seq": seed})
            logger.info("Seeded %s counter for %s at %d", kind, owner_id, seed)
        except DuplicateKeyError:
            pass  # seeded concurrently
        doc = counters.find_one_and_update(
            {"_id": key}, {"$inc": {"seq": 1}}, return_document=ReturnDocument.AFTER
        )
    return int(doc["seq"])
