"""
Quotes

Numbered independently of invoices. A quote can be sent, accepted or
rejected, and finally converted into a draft invoice. Conversion is
one-way: a converted quote can no longer be edited, deleted or converted
again.
"""
import logging
from datetime import timedelta
from typing import Any, Dict

from pymongo.database import Database

import config
from database import as_number, contains, create_document, oid, owned, paginate, utcnow
from errors import InvalidState, NotFound, ValidationFailed
from invoices import (
    attach_clients, client_ids_matching, compute_totals, get_client, get_invoice, history_entry, opening_status,
)
from mailer import Mailer
from numbering import next_number
from schemas import Invoice, Quote, QuoteIn
from settings import find_settings

logger = logging.getLogger(__name__)


def find_quote(db: Database, owner_id: str, quote_id: str) -> Dict[str, Any]:
    quote = db["quote"].find_one(owned(owner_id, {"_id": oid(quote_id)}))
    if not quote:
        raise NotFound("Quote not found")
    return quote


def _ensure_open(quote: Dict[str, Any], action: str) -> None:
    if quote["status"] == "converted":
        raise InvalidState(f"Converted quotes cannot be {action}")


def create_quote(db: Database, owner_id: str, payload: QuoteIn, now=None) -> Dict[str, Any]:
    now = now or utcnow()
    get_client(db, owner_id, payload.client_id)
    settings = find_settings(db, owner_id)

    issue_date = payload.date or now
    due_date = payload.due_date or issue_date + timedelta(days=settings.get("default_payment_terms", 14))
    if due_date < issue_date:
        raise ValidationFailed("Expiry date cannot be before the quote date")
    tax_rate = payload.tax_rate if payload.tax_rate is not None else settings.get("tax_rate", 0)
    lines, sub_total, tax_total, total = compute_totals(payload.items, tax_rate, payload.discount)

    quote = Quote(
        number=next_number(db, owner_id, "quote"),
        title=payload.title,
        date=issue_date,
        due_date=due_date,
        client_id=payload.client_id,
        items=lines,
        notes=payload.notes,
        currency=payload.currency or settings.get("currency", "USD"),
        sub_total=sub_total,
        tax_rate=tax_rate,
        tax_total=tax_total,
        discount=payload.discount,
        total=total,
        history=[history_entry("created", owner_id)],
        created_by=owner_id,
    )
    quote_id = create_document(db, "quote", quote)
    logger.info("Quote #%d created for %s", quote.number, owner_id)
    return get_quote(db, owner_id, quote_id)


def list_quotes(db: Database, owner_id: str, page: int = 1, limit: int = 10, search: str = ""):
    query: Dict[str, Any] = owned(owner_id)
    search = (search or "").strip()
    if search:
        number = as_number(search)
        if number is not None:
            query["number"] = number
        else:
            query["$or"] = [
                {"title": contains(search)},
                {"client_id": {"$in": client_ids_matching(db, owner_id, search)}},
            ]
    docs, pagination = paginate(db, "quote", query, page, limit)
    return attach_clients(db, docs), pagination


def get_quote(db: Database, owner_id: str, quote_id: str) -> Dict[str, Any]:
    return attach_clients(db, [find_quote(db, owner_id, quote_id)])[0]


def update_quote(db: Database, owner_id: str, quote_id: str, payload: QuoteIn) -> Dict[str, Any]:
    quote = find_quote(db, owner_id, quote_id)
    _ensure_open(quote, "edited")
    get_client(db, owner_id, payload.client_id)
    tax_rate = payload.tax_rate if payload.tax_rate is not None else quote.get("tax_rate", 0)
    lines, sub_total, tax_total, total = compute_totals(payload.items, tax_rate, payload.discount)
    update = {
        "title": payload.title,
        "client_id": payload.client_id,
        "date": payload.date or quote["date"],
        "due_date": payload.due_date or quote["due_date"],
        "items": lines,
        "notes": payload.notes,
        "currency": payload.currency or quote.get("currency", "USD"),
        "sub_total": sub_total,
        "tax_rate": tax_rate,
        "tax_total": tax_total,
        "discount": payload.discount,
        "total": total,
    }
    if update["due_date"] < update["date"]:
        raise ValidationFailed("Expiry date cannot be before the quote date")
    changed = sorted(k for k, v in update.items() if quote.get(k) != v)
    update["updated_at"] = utcnow()
    db["quote"].update_one(
        {"_id": quote["_id"]},
        {"$set": update, "$push": {"history": history_entry("updated", owner_id, {"fields": changed})}},
    )
    return get_quote(db, owner_id, quote_id)


def delete_quote(db: Database, owner_id: str, quote_id: str) -> None:
    quote = find_quote(db, owner_id, quote_id)
    _ensure_open(quote, "deleted")
    db["quote"].delete_one({"_id": quote["_id"]})


def send_quote(db: Database, owner_id: str, quote_id: str, mailer: Mailer) -> Dict[str, Any]:
    quote = find_quote(db, owner_id, quote_id)
    _ensure_open(quote, "sent")
    client = db["client"].find_one({"_id": oid(quote["client_id"])})
    if client and client.get("email"):
        mailer.send_quote(quote, client)
    else:
        logger.warning("Quote #%s marked sent without email: client has no address", quote["number"])
    db["quote"].update_one(
        {"_id": quote["_id"]},
        {"$set": {"status": "sent", "updated_at": utcnow()},
         "$push": {"history": history_entry("sent", owner_id)}},
    )
    return get_quote(db, owner_id, quote_id)


def set_quote_status(db: Database, owner_id: str, quote_id: str, status: str) -> Dict[str, Any]:
    quote = find_quote(db, owner_id, quote_id)
    _ensure_open(quote, "changed")
    db["quote"].update_one(
        {"_id": quote["_id"]},
        {"$set": {"status": status, "updated_at": utcnow()},
         "$push": {"history": history_entry("status", owner_id, {"from": quote["status"], "to": status})}},
    )
    return get_quote(db, owner_id, quote_id)


def convert_quote(db: Database, owner_id: str, quote_id: str, now=None) -> Dict[str, Any]:
    """Turn a quote into a draft invoice due in seven days."""
    now = now or utcnow()
    quote = find_quote(db, owner_id, quote_id)
    if quote["status"] == "converted":
        raise InvalidState("Quote already converted")

    # claim the quote first so a concurrent conversion loses
    claimed = db["quote"].find_one_and_update(
        {"_id": quote["_id"], "status": {"$ne": "converted"}},
        {"$set": {"status": "converted", "updated_at": now}},
    )
    if claimed is None:
        raise InvalidState("Quote already converted")

    status, payment_status = opening_status(quote.get("total", 0), "draft")
    try:
        invoice = Invoice(
            number=next_number(db, owner_id, "invoice"),
            year=now.year,
            date=now,
            due_date=now + timedelta(days=config.QUOTE_VALIDITY_ON_CONVERT_DAYS),
            client_id=quote["client_id"],
            items=quote["items"],
            notes=f"Converted from Quote #{quote['number']}",
            currency=quote.get("currency", "USD"),
            sub_total=quote.get("sub_total", 0),
            tax_rate=quote.get("tax_rate", 0),
            tax_total=quote.get("tax_total", 0),
            discount=quote.get("discount", 0),
            total=quote.get("total", 0),
            status=status,
            payment_status=payment_status,
            converted={"from": "quote", "quote_id": str(quote["_id"])},
            history=[history_entry("created", owner_id, {"from_quote": quote["number"]})],
            created_by=owner_id,
        )
        invoice_id = create_document(db, "invoice", invoice)
    except Exception:
        db["quote"].update_one({"_id": quote["_id"]}, {"$set": {"status": quote["status"]}})
        raise

    db["quote"].update_one(
        {"_id": quote["_id"]},
        {"$set": {"converted_invoice_id": invoice_id},
         "$push": {"history": history_entry("converted", owner_id, {"invoice_id": invoice_id})}},
    )
    logger.info("Quote #%s converted to invoice #%d", quote["number"], invoice.number)
    return get_invoice(db, owner_id, invoice_id)
