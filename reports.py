"""Read-only reports, same aggregation style as the dashboard but narrower."""
import calendar
from datetime import datetime
from typing import Any, Dict, List

from pymongo.database import Database

from dashboard import billed, sum_fields
from database import owned


def revenue_vs_expenses(db: Database, owner_id: str, year: int) -> List[Dict[str, Any]]:
    in_year = {"date": {"$gte": datetime(year, 1, 1), "$lt": datetime(year + 1, 1, 1)}}
    revenue = db["invoice"].aggregate([
        {"$match": billed(owner_id, in_year)},
        {"$group": {"_id": {"$month": "$date"}, "total": {"$sum": "$total"}}},
        {"$sort": {"_id": 1}},
    ])
    expenses = db["expense"].aggregate([
        {"$match": owned(owner_id, in_year)},
        {"$group": {"_id": {"$month": "$date"}, "total": {"$sum": "$amount"}}},
        {"$sort": {"_id": 1}},
    ])
    rev = {row["_id"]: row["total"] for row in revenue}
    exp = {row["_id"]: row["total"] for row in expenses}

    data = []
    for m in range(1, 13):
        r, e = rev.get(m, 0), exp.get(m, 0)
        data.append({
            "month": calendar.month_abbr[m],
            "revenue": round(r, 2),
            "expenses": round(e, 2),
            "profit": round(r - e, 2),
        })
    return data


def expense_breakdown(db: Database, owner_id: str) -> List[Dict[str, Any]]:
    rows = db["expense"].aggregate([
        {"$match": owned(owner_id)},
        {"$group": {"_id": "$category", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
        {"$sort": {"total": -1}},
    ])
    return [{"category": row["_id"], "total": round(row["total"], 2), "count": row["count"]} for row in rows]


def tax_report(db: Database, owner_id: str) -> Dict[str, float]:
    row = sum_fields(db, "invoice", billed(owner_id), "tax_total", "sub_total", "total")
    return {
        "total_tax": round(row["tax_total"], 2),
        "total_taxable": round(row["sub_total"], 2),
        "total_revenue": round(row["total"], 2),
        "invoices": row["count"],
    }
