from datetime import datetime

import reports
from conftest import line, make_client
from invoices import create_invoice
from schemas import InvoiceIn


def seed(db, owner="o1"):
    client_id = make_client(db, owner)
    for when, price, status in [
        (datetime(2026, 1, 5), 100, "sent"),
        (datetime(2026, 1, 20), 50, "pending"),
        (datetime(2026, 3, 2), 200, "sent"),
        (datetime(2026, 3, 3), 999, "draft"),
        (datetime(2025, 3, 3), 400, "sent"),
    ]:
        payload = InvoiceIn(client_id=client_id, date=when, due_date=when, items=[line(price=price)],
                            tax_rate=10, status=status)
        create_invoice(db, owner, payload, now=when)
    db["expense"].insert_many([
        {"description": "Hosting", "amount": 30, "category": "Software", "date": datetime(2026, 1, 9), "created_by": owner},
        {"description": "Domain", "amount": 15, "category": "Software", "date": datetime(2026, 3, 9), "created_by": owner},
        {"description": "Flyers", "amount": 80, "category": "Marketing", "date": datetime(2026, 3, 9), "created_by": owner},
    ])


def test_revenue_vs_expenses(db):
    seed(db)
    rows = reports.revenue_vs_expenses(db, "o1", 2026)
    assert [r["month"] for r in rows][:3] == ["Jan", "Feb", "Mar"]
    assert len(rows) == 12
    assert rows[0] == {"month": "Jan", "revenue": 165.0, "expenses": 30, "profit": 135.0}
    assert rows[1] == {"month": "Feb", "revenue": 0, "expenses": 0, "profit": 0}
    assert rows[2] == {"month": "Mar", "revenue": 220.0, "expenses": 95, "profit": 125.0}


def test_expense_breakdown(db):
    seed(db)
    assert reports.expense_breakdown(db, "o1") == [
        {"category": "Marketing", "total": 80, "count": 1},
        {"category": "Software", "total": 45, "count": 2},
    ]


def test_tax_report_excludes_drafts(db):
    seed(db)
    assert reports.tax_report(db, "o1") == {
        "total_tax": 75.0,
        "total_taxable": 750.0,
        "total_revenue": 825.0,
        "invoices": 4,
    }


def test_report_routes(client, auth):
    res = client.get("/reports/revenue-vs-expenses", params={"year": 2026}, headers=auth)
    assert res.status_code == 200
    assert len(res.json()["data"]) == 12
    assert client.get("/reports/expense-breakdown", headers=auth).json()["data"] == []
    assert client.get("/reports/tax", headers=auth).json()["data"]["invoices"] == 0
