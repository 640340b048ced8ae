"""
Invoice lifecycle

    draft ──send──> sent ──(due date passes)──> overdue
      │                │                           │
      └──> pending ────┴─────── full payment ──────┴──> paid

Payment progress is tracked separately in `payment_status`
(unpaid -> partially -> paid). A payment that covers the total forces
`status` to "paid" whatever the previous status was, overdue included.
An invoice whose total is zero is paid from the moment it is written.

Totals are always recomputed here from the line items; whatever the caller
sent for item/sub/tax totals is ignored.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import as_number, contains, create_document, oid, owned, paginate, utcnow, visible
from errors import InvalidState, NotFound, ValidationFailed
from mailer import Mailer
from numbering import next_number
from schemas import HistoryEntry, Invoice, InvoiceIn, LineItem, Payment
from settings import find_settings
from stock import adjust_stock, restore_ledger

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = ("draft", "pending", "sent", "overdue")


def compute_totals(items: List[LineItem], tax_rate: float, discount: float = 0
                   ) -> Tuple[List[Dict[str, Any]], float, float, float]:
    lines = []
    for item in items:
        line = item.model_dump()
        line["total"] = round(item.quantity * item.price, 2)
        lines.append(line)
    sub_total = round(sum(line["total"] for line in lines), 2)
    tax_total = round(sub_total * tax_rate / 100.0, 2)
    total = round(max(sub_total + tax_total - discount, 0), 2)
    return lines, sub_total, tax_total, total


def payment_state(amount_paid: float, total: float) -> str:
    # a zero total is settled from the start
    if round(amount_paid, 2) >= round(total, 2):
        return "paid"
    return "partially" if amount_paid > 0 else "unpaid"


def opening_status(total: float, requested: Optional[str]) -> Tuple[str, str]:
    """(status, payment_status) for a new invoice with nothing paid yet."""
    state = payment_state(0, total)
    return ("paid" if state == "paid" else requested or "draft"), state


def history_entry(action: str, user_id: Optional[str], changes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return HistoryEntry(action=action, user_id=user_id, at=utcnow(), changes=changes or {}).model_dump()


def get_client(db: Database, owner_id: str, client_id: str) -> Dict[str, Any]:
    client = db["client"].find_one(visible(owned(owner_id, {"_id": oid(client_id)})))
    if not client:
        raise NotFound("Client not found")
    return client


def attach_clients(db: Database, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Embed a short client record under "client" (removed clients included)."""
    ids = {d.get("client_id") for d in docs if d.get("client_id")}
    clients = {}
    if ids:
        for c in db["client"].find({"_id": {"$in": [oid(i) for i in ids]}}):
            clients[str(c["_id"])] = {"id": str(c["_id"]), "name": c.get("name"), "email": c.get("email")}
    for d in docs:
        d["client"] = clients.get(d.get("client_id"))
    return docs


def client_ids_matching(db: Database, owner_id: str, text: str) -> List[str]:
    return [str(c["_id"]) for c in db["client"].find(owned(owner_id, {"name": contains(text)}), {"_id": 1})]


def find_invoice(db: Database, owner_id: Optional[str], invoice_id: str) -> Dict[str, Any]:
    query = {"_id": oid(invoice_id)}
    if owner_id is not None:
        query = owned(owner_id, query)
    invoice = db["invoice"].find_one(visible(query))
    if not invoice:
        raise NotFound("Invoice not found")
    return invoice


def create_invoice(db: Database, owner_id: str, payload: InvoiceIn, now=None) -> Dict[str, Any]:
    now = now or utcnow()
    get_client(db, owner_id, payload.client_id)
    settings = find_settings(db, owner_id)

    issue_date = payload.date or now
    due_date = payload.due_date or issue_date + timedelta(days=settings.get("default_payment_terms", 14))
    if due_date < issue_date:
        raise ValidationFailed("Due date cannot be before the invoice date")
    tax_rate = payload.tax_rate if payload.tax_rate is not None else settings.get("tax_rate", 0)
    lines, sub_total, tax_total, total = compute_totals(payload.items, tax_rate, payload.discount)
    status, payment_status = opening_status(total, payload.status)

    invoice = Invoice(
        number=next_number(db, owner_id, "invoice"),
        year=now.year,
        date=issue_date,
        due_date=due_date,
        client_id=payload.client_id,
        items=lines,
        notes=payload.notes if payload.notes is not None else settings.get("default_notes"),
        currency=payload.currency or settings.get("currency", "USD"),
        sub_total=sub_total,
        tax_rate=tax_rate,
        tax_total=tax_total,
        discount=payload.discount,
        credit=payload.credit,
        total=total,
        status=status,
        payment_status=payment_status,
        history=[history_entry("created", owner_id)],
        created_by=owner_id,
    )
    invoice_id = create_document(db, "invoice", invoice)
    logger.info("Invoice #%d created for %s (total %.2f)", invoice.number, owner_id, total)

    # the invoice is persisted before stock moves
    ledger = adjust_stock(db, owner_id, lines, "deduct")
    db["invoice"].update_one({"_id": oid(invoice_id)}, {"$set": {"stock_ledger": ledger}})
    return attach_clients(db, [find_invoice(db, owner_id, invoice_id)])[0]


def list_invoices(db: Database, owner_id: str, page: int = 1, limit: int = 10,
                  search: str = "", status: Optional[str] = None):
    query: Dict[str, Any] = visible(owned(owner_id))
    if status:
        query["status"] = status
    search = (search or "").strip()
    if search:
        number = as_number(search)
        if number is not None:
            query["number"] = number
        else:
            query["client_id"] = {"$in": client_ids_matching(db, owner_id, search)}
    docs, pagination = paginate(db, "invoice", query, page, limit)
    return attach_clients(db, docs), pagination


def get_invoice(db: Database, owner_id: str, invoice_id: str) -> Dict[str, Any]:
    return attach_clients(db, [find_invoice(db, owner_id, invoice_id)])[0]


def update_invoice(db: Database, owner_id: str, invoice_id: str, payload: InvoiceIn) -> Dict[str, Any]:
    invoice = find_invoice(db, owner_id, invoice_id)
    if invoice["status"] == "paid":
        raise InvalidState("Paid invoices cannot be edited")
    get_client(db, owner_id, payload.client_id)

    issue_date = payload.date or invoice["date"]
    due_date = payload.due_date or invoice["due_date"]
    if due_date < issue_date:
        raise ValidationFailed("Due date cannot be before the invoice date")
    tax_rate = payload.tax_rate if payload.tax_rate is not None else invoice.get("tax_rate", 0)
    lines, sub_total, tax_total, total = compute_totals(payload.items, tax_rate, payload.discount)

    update = {
        "client_id": payload.client_id,
        "date": issue_date,
        "due_date": due_date,
        "items": lines,
        "notes": payload.notes,
        "currency": payload.currency or invoice.get("currency", "USD"),
        "sub_total": sub_total,
        "tax_rate": tax_rate,
        "tax_total": tax_total,
        "discount": payload.discount,
        "credit": payload.credit,
        "total": total,
    }
    state = payment_state(invoice.get("amount_paid", 0), total)
    update["payment_status"] = state
    if state == "paid":
        update["status"] = "paid"
    changed = sorted(k for k, v in update.items() if invoice.get(k) != v)

    # swap the stock movement of the old items for the new ones
    restore_ledger(db, owner_id, invoice.get("stock_ledger", []))
    update["stock_ledger"] = adjust_stock(db, owner_id, lines, "deduct")
    update["updated_at"] = utcnow()

    db["invoice"].update_one(
        {"_id": invoice["_id"]},
        {"$set": update, "$push": {"history": history_entry("updated", owner_id, {"fields": changed})}},
    )
    return get_invoice(db, owner_id, invoice_id)


def delete_invoice(db: Database, owner_id: str, invoice_id: str) -> None:
    invoice = find_invoice(db, owner_id, invoice_id)
    restore_ledger(db, owner_id, invoice.get("stock_ledger", []))
    db["invoice"].update_one(
        {"_id": invoice["_id"]},
        {
            "$set": {"removed": True, "stock_ledger": [], "updated_at": utcnow()},
            "$push": {"history": history_entry("deleted", owner_id)},
        },
    )
    logger.info("Invoice #%s removed by %s", invoice.get("number"), owner_id)


def send_invoice(db: Database, owner_id: str, invoice_id: str, mailer: Mailer) -> Dict[str, Any]:
    invoice = find_invoice(db, owner_id, invoice_id)
    if invoice["status"] != "draft":
        raise InvalidState(f"Only draft invoices can be sent (status is {invoice['status']})")
    client = db["client"].find_one({"_id": oid(invoice["client_id"])})
    if not client or not client.get("email"):
        raise ValidationFailed("Client has no email address")

    # raises DeliveryFailed; status stays draft in that case
    mailer.send_invoice(invoice, client)

    db["invoice"].update_one(
        {"_id": invoice["_id"], "status": "draft"},
        {
            "$set": {"status": "sent", "updated_at": utcnow()},
            "$push": {"history": history_entry("sent", owner_id, {"to": client["email"]})},
        },
    )
    logger.info("Invoice #%s sent to %s", invoice["number"], client["email"])
    return get_invoice(db, owner_id, invoice_id)


def record_payment(db: Database, owner_id: Optional[str], invoice_id: str, amount: float,
                   method: str = "manual", user_id: Optional[str] = None) -> Dict[str, Any]:
    """Add a payment. Overpayment is accepted; there are no refunds."""
    if amount <= 0:
        raise ValidationFailed("Payment amount must be positive")
    invoice = find_invoice(db, owner_id, invoice_id)
    now = utcnow()
    payment = Payment(amount=amount, method=method, at=now).model_dump()
    doc = db["invoice"].find_one_and_update(
        {"_id": invoice["_id"]},
        {"$inc": {"amount_paid": amount}, "$push": {"payments": payment}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )

    state = "paid" if payment_state(doc["amount_paid"], doc.get("total", 0)) == "paid" else "partially"
    update = {"payment_status": state}
    if state == "paid":
        update["status"] = "paid"
    db["invoice"].update_one(
        {"_id": invoice["_id"]},
        {"$set": update, "$push": {"history": history_entry("payment", user_id or owner_id,
                                                            {"amount": amount, "method": method})}},
    )
    logger.info("Payment of %.2f on invoice #%s (%s)", amount, invoice.get("number"), state)
    return attach_clients(db, [find_invoice(db, owner_id, invoice_id)])[0]


def set_status(db: Database, owner_id: str, invoice_id: str, status: str) -> Dict[str, Any]:
    invoice = find_invoice(db, owner_id, invoice_id)
    if invoice["status"] == "paid":
        raise InvalidState("Paid invoices cannot change status")
    if status not in EDITABLE_STATUSES:
        raise ValidationFailed(f"Unsupported status: {status}")
    db["invoice"].update_one(
        {"_id": invoice["_id"]},
        {
            "$set": {"status": status, "updated_at": utcnow()},
            "$push": {"history": history_entry("status", owner_id, {"from": invoice["status"], "to": status})},
        },
    )
    return get_invoice(db, owner_id, invoice_id)
