"""
Dashboard aggregation

Every figure on the dashboard is its own query against the document store.
`build_dashboard` runs them side by side in the default executor and merges
the results; if any single query fails the whole snapshot fails.

Figures are not cross-checked against each other. In particular the aging
buckets are separate half-open date ranges on `due_date`, so an invoice due
exactly 30 days ago lands in "1-30" and nowhere else:

    current   due_date >= now
    1-30      now-30d <= due_date < now
    31-60     now-60d <= due_date < now-30d
    61-90     now-90d <= due_date < now-60d
    90+                  due_date < now-90d
"""
import asyncio
import calendar
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import as_number, contains, owned, serialize_doc, utcnow, visible
from invoices import attach_clients, client_ids_matching

logger = logging.getLogger(__name__)

TOP_CLIENTS = 5
RECENT_INVOICES = 5
SEARCH_LIMIT = 5

AGING_BUCKETS = [
    # key, label, lower bound in days overdue (inclusive), upper bound (exclusive)
    ("current", "Current", None, 0),
    ("1_30", "1-30 days", 0, 30),
    ("31_60", "31-60 days", 30, 60),
    ("61_90", "61-90 days", 60, 90),
    ("90_plus", "90+ days", 90, None),
]


def _invoices(owner_id: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return visible(owned(owner_id, extra))


def billed(owner_id: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Invoices that count as revenue: everything but drafts."""
    query = _invoices(owner_id, extra)
    query["status"] = {"$ne": "draft"}
    return query


def _outstanding(owner_id: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    query = _invoices(owner_id, extra)
    query["status"] = {"$nin": ["draft", "paid"]}
    return query


def sum_fields(db: Database, collection: str, match: Dict[str, Any], *fields: str) -> Dict[str, float]:
    group: Dict[str, Any] = {"_id": None, "count": {"$sum": 1}}
    for field in fields:
        group[field] = {"$sum": f"${field}"}
    rows = list(db[collection].aggregate([{"$match": match}, {"$group": group}]))
    row = rows[0] if rows else {}
    out = {field: row.get(field, 0) or 0 for field in fields}
    out["count"] = row.get("count", 0)
    return out


def month_start(year: int, month: int) -> datetime:
    while month < 1:
        month += 12
        year -= 1
    while month > 12:
        month -= 12
        year += 1
    return datetime(year, month, 1)


def trend_percentage(this_month: float, last_month: float) -> float:
    if last_month > 0:
        return round((this_month - last_month) / last_month * 100, 2)
    if this_month > 0:
        return 100.0
    return 0.0


# ---------------- Individual figures ----------------

def total_revenue(db: Database, owner_id: str, now: datetime) -> float:
    return sum_fields(db, "invoice", billed(owner_id), "total")["total"]


def total_expenses(db: Database, owner_id: str, now: datetime) -> float:
    return sum_fields(db, "expense", {"created_by": owner_id}, "amount")["amount"]


def outstanding(db: Database, owner_id: str, now: datetime) -> Dict[str, Any]:
    row = sum_fields(db, "invoice", _outstanding(owner_id), "total", "amount_paid")
    return {"count": row["count"], "amount": round(row["total"] - row["amount_paid"], 2)}


def total_invoices(db: Database, owner_id: str, now: datetime) -> int:
    return db["invoice"].count_documents(_invoices(owner_id))


def active_clients(db: Database, owner_id: str, now: datetime) -> int:
    return db["client"].count_documents(visible(owned(owner_id, {"status": "active"})))


def recent_invoices(db: Database, owner_id: str, now: datetime) -> List[Dict[str, Any]]:
    docs = list(db["invoice"].find(_invoices(owner_id)).sort([("date", DESCENDING)]).limit(RECENT_INVOICES))
    return [
        {
            "id": str(d["_id"]),
            "number": d.get("number"),
            "date": d.get("date"),
            "due_date": d.get("due_date"),
            "total": d.get("total", 0),
            "status": d.get("status"),
            "payment_status": d.get("payment_status"),
            "client": d.get("client"),
        }
        for d in attach_clients(db, docs)
    ]


def monthly_series(db: Database, owner_id: str, now: datetime) -> List[Dict[str, Any]]:
    start, end = datetime(now.year, 1, 1), datetime(now.year + 1, 1, 1)
    in_year = {"date": {"$gte": start, "$lt": end}}
    income = db["invoice"].aggregate([
        {"$match": billed(owner_id, in_year)},
        {"$group": {"_id": {"$month": "$date"}, "total": {"$sum": "$total"}}},
    ])
    expense = db["expense"].aggregate([
        {"$match": owned(owner_id, in_year)},
        {"$group": {"_id": {"$month": "$date"}, "total": {"$sum": "$amount"}}},
    ])
    income_by_month = {row["_id"]: row["total"] for row in income}
    expense_by_month = {row["_id"]: row["total"] for row in expense}
    return [
        {
            "month": m,
            "name": calendar.month_abbr[m],
            "income": income_by_month.get(m, 0),
            "expense": expense_by_month.get(m, 0),
        }
        for m in range(1, 13)
    ]


def revenue_trend(db: Database, owner_id: str, now: datetime) -> Dict[str, float]:
    this_start = month_start(now.year, now.month)
    last_start = month_start(now.year, now.month - 1)
    next_start = month_start(now.year, now.month + 1)
    this_month = sum_fields(db, "invoice", billed(owner_id, {"date": {"$gte": this_start, "$lt": next_start}}),
                            "total")["total"]
    last_month = sum_fields(db, "invoice", billed(owner_id, {"date": {"$gte": last_start, "$lt": this_start}}),
                            "total")["total"]
    return {
        "this_month": this_month,
        "last_month": last_month,
        "trend_percentage": trend_percentage(this_month, last_month),
    }


def aging_bucket(db: Database, owner_id: str, now: datetime, lower: Optional[int], upper: Optional[int]
                 ) -> Dict[str, Any]:
    """Outstanding balance for invoices between `lower` and `upper` days overdue."""
    due: Dict[str, datetime] = {}
    if lower is None:
        due["$gte"] = now
    else:
        due["$lt"] = now - timedelta(days=lower)
    if upper is not None and lower is not None:
        due["$gte"] = now - timedelta(days=upper)
    row = sum_fields(db, "invoice", _outstanding(owner_id, {"due_date": due}), "total", "amount_paid")
    return {"amount": round(row["total"] - row["amount_paid"], 2), "count": row["count"]}


def top_clients(db: Database, owner_id: str, now: datetime) -> List[Dict[str, Any]]:
    ranking = list(db["invoice"].aggregate([
        {"$match": billed(owner_id)},
        {"$group": {"_id": "$client_id", "revenue": {"$sum": "$total"}, "invoices": {"$sum": 1}}},
        {"$sort": {"revenue": -1}},
        {"$limit": TOP_CLIENTS},
    ]))
    ids = [row["_id"] for row in ranking if row["_id"]]
    balances = {
        row["_id"]: row["total"] - row["paid"]
        for row in db["invoice"].aggregate([
            {"$match": _outstanding(owner_id, {"client_id": {"$in": ids}})},
            {"$group": {"_id": "$client_id", "total": {"$sum": "$total"}, "paid": {"$sum": "$amount_paid"}}},
        ])
    }
    named = {d["client_id"]: d["client"] for d in attach_clients(db, [{"client_id": i} for i in ids])}
    return [
        {
            "client_id": row["_id"],
            "name": (named.get(row["_id"]) or {}).get("name"),
            "revenue": row["revenue"],
            "invoices": row["invoices"],
            "outstanding": round(balances.get(row["_id"], 0), 2),
        }
        for row in ranking
    ]


# ---------------- Snapshot ----------------

async def build_dashboard(db: Database, owner_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    queries = {
        "total_revenue": partial(total_revenue, db, owner_id, now),
        "total_expenses": partial(total_expenses, db, owner_id, now),
        "outstanding": partial(outstanding, db, owner_id, now),
        "total_invoices": partial(total_invoices, db, owner_id, now),
        "active_clients": partial(active_clients, db, owner_id, now),
        "recent_invoices": partial(recent_invoices, db, owner_id, now),
        "chart_data": partial(monthly_series, db, owner_id, now),
        "trend": partial(revenue_trend, db, owner_id, now),
        "top_clients": partial(top_clients, db, owner_id, now),
    }
    for key, _label, lower, upper in AGING_BUCKETS:
        queries[f"aging:{key}"] = partial(aging_bucket, db, owner_id, now, lower, upper)

    loop = asyncio.get_running_loop()
    results = await asyncio.gather(*(loop.run_in_executor(None, q) for q in queries.values()))
    r = dict(zip(queries.keys(), results))

    revenue, expenses = r["total_revenue"], r["total_expenses"]
    return serialize_doc({
        "total_revenue": revenue,
        "total_expenses": expenses,
        "net_profit": round(revenue - expenses, 2),
        "outstanding_count": r["outstanding"]["count"],
        "outstanding_amount": r["outstanding"]["amount"],
        "total_invoices": r["total_invoices"],
        "active_clients": r["active_clients"],
        "recent_invoices": r["recent_invoices"],
        "chart_data": r["chart_data"],
        "this_month_revenue": r["trend"]["this_month"],
        "last_month_revenue": r["trend"]["last_month"],
        "trend_percentage": r["trend"]["trend_percentage"],
        "aging": {
            key: {"label": label, **r[f"aging:{key}"]}
            for key, label, _lower, _upper in AGING_BUCKETS
        },
        "top_clients": r["top_clients"],
    })


# ---------------- Typeahead search ----------------

def search(db: Database, owner_id: str, q: str) -> Dict[str, List[Dict[str, Any]]]:
    """Three independent lookups, at most SEARCH_LIMIT hits each."""
    q = (q or "").strip()
    if not q:
        return {"clients": [], "invoices": [], "products": []}

    pattern = contains(q)
    clients = db["client"].find(visible(owned(owner_id, {
        "$or": [{"name": pattern}, {"email": pattern}, {"phone": pattern}],
    }))).limit(SEARCH_LIMIT)

    number = as_number(q)
    if number is not None:
        invoice_query = _invoices(owner_id, {"number": number})
    else:
        invoice_query = _invoices(owner_id, {"client_id": {"$in": client_ids_matching(db, owner_id, q)}})
    invoices = attach_clients(
        db, list(db["invoice"].find(invoice_query).sort([("date", DESCENDING)]).limit(SEARCH_LIMIT))
    )

    products = db["product"].find(owned(owner_id, {
        "$or": [{"name": pattern}, {"sku": pattern}],
    })).limit(SEARCH_LIMIT)

    return serialize_doc({
        "clients": [
            {"_id": c["_id"], "name": c.get("name"), "email": c.get("email"), "phone": c.get("phone")}
            for c in clients
        ],
        "invoices": [
            {"_id": i["_id"], "number": i.get("number"), "total": i.get("total", 0),
             "status": i.get("status"), "client": i.get("client")}
            for i in invoices
        ],
        "products": [
            {"_id": p["_id"], "name": p.get("name"), "sku": p.get("sku"), "price": p.get("price"),
             "stock": p.get("stock")}
            for p in products
        ],
    })
