from datetime import timedelta

from fastapi.testclient import TestClient

from conftest import line, register
from database import utcnow
from jobs import sweep_overdue


def create_invoice(client, auth, client_id, items=None, **fields):
    body = {"client_id": client_id, "items": items or [line()], **fields}
    res = client.post("/invoices", json=body, headers=auth)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def test_totals_are_recomputed(client, auth, acme):
    items = [line(quantity=2, price=50, total=999), line("Setup", price=20)]
    invoice = create_invoice(client, auth, acme["id"], items=items, tax_rate=10, discount=5)
    assert [i["total"] for i in invoice["items"]] == [100, 20]
    assert invoice["sub_total"] == 120
    assert invoice["tax_total"] == 12
    assert invoice["total"] == 127
    assert invoice["status"] == "draft"
    assert invoice["payment_status"] == "unpaid"
    assert invoice["client"]["name"] == "Acme Corp"


def test_discount_never_makes_total_negative(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=10)], discount=50)
    assert invoice["total"] == 0


def test_numbers_are_sequential_from_1000(client, auth, acme):
    first = create_invoice(client, auth, acme["id"])
    second = create_invoice(client, auth, acme["id"])
    assert (first["number"], second["number"]) == (1000, 1001)


def test_numbers_start_from_settings(client, auth, acme):
    client.put("/settings", json={"invoice_start_number": 5000}, headers=auth)
    assert create_invoice(client, auth, acme["id"])["number"] == 5000


def test_settings_defaults_apply(client, auth, acme):
    client.put("/settings", json={"tax_rate": 20, "default_payment_terms": 30, "currency": "eur"}, headers=auth)
    invoice = create_invoice(client, auth, acme["id"], date="2026-03-01")
    assert invoice["tax_total"] == 20
    assert invoice["currency"] == "EUR"
    assert invoice["due_date"].startswith("2026-03-31")


def test_validation(client, auth, acme):
    res = client.post("/invoices", json={"client_id": acme["id"], "items": []}, headers=auth)
    assert res.status_code == 400
    assert res.json()["success"] is False

    res = client.post("/invoices", json={"client_id": acme["id"], "items": [line()],
                                         "date": "2026-03-10", "due_date": "2026-03-01"}, headers=auth)
    assert res.status_code == 400
    assert res.json()["message"] == "Due date cannot be before the invoice date"


def test_unknown_and_malformed_ids(client, auth, acme):
    assert client.get("/invoices/not-an-id", headers=auth).status_code == 400
    res = client.get("/invoices/64b7f0000000000000000000", headers=auth)
    assert res.status_code == 404
    assert res.json()["message"] == "Invoice not found"


def test_invoices_are_owner_scoped(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"])
    other = TestClient(client.app, raise_server_exceptions=False)
    other_auth = register(other, email="other@example.com")
    assert other.get(f"/invoices/{invoice['id']}", headers=other_auth).status_code == 404


# ---------------- payments ----------------

def test_exact_payment_marks_paid(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=105)])
    res = client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 105}, headers=auth)
    paid = res.json()["data"]
    assert paid["status"] == "paid"
    assert paid["payment_status"] == "paid"
    assert paid["amount_paid"] >= paid["total"]


def test_partial_then_over_payment(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=100)], status="sent")
    partial = client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 40}, headers=auth).json()["data"]
    assert partial["payment_status"] == "partially"
    assert partial["status"] == "sent"

    paid = client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 100}, headers=auth).json()["data"]
    assert paid["status"] == "paid"
    assert paid["amount_paid"] == 140
    assert len(paid["payments"]) == 2


def test_payment_must_be_positive(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"])
    res = client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 0}, headers=auth)
    assert res.status_code == 400


def test_payment_on_overdue_invoice_marks_paid(client, auth, acme, db):
    past = utcnow() - timedelta(days=40)
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=80)], status="sent",
                             date=past.isoformat(), due_date=(past + timedelta(days=10)).isoformat())
    assert sweep_overdue(db) == 1
    assert client.get(f"/invoices/{invoice['id']}", headers=auth).json()["data"]["status"] == "overdue"

    paid = client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 80}, headers=auth).json()["data"]
    assert paid["status"] == "paid"


def test_paid_invoice_is_frozen(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=10)])
    client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 10}, headers=auth)

    res = client.put(f"/invoices/{invoice['id']}", json={"client_id": acme["id"], "items": [line(price=5)]},
                     headers=auth)
    assert res.status_code == 400
    res = client.patch(f"/invoices/{invoice['id']}/status", json={"status": "draft"}, headers=auth)
    assert res.status_code == 400


def test_public_pay_settles_balance(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=60)], status="sent")
    client.post(f"/invoices/{invoice['id']}/payment", json={"amount": 20}, headers=auth)

    res = client.post(f"/public/invoices/{invoice['id']}/pay")
    assert res.status_code == 200
    assert res.json()["data"]["amount_paid"] == 60
    assert res.json()["data"]["status"] == "paid"

    again = client.post(f"/public/invoices/{invoice['id']}/pay")
    assert again.status_code == 400
    assert again.json()["message"] == "Invoice is already paid"


def test_public_invoice_view(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"])
    data = client.get(f"/public/invoices/{invoice['id']}").json()["data"]
    assert data["invoice"]["number"] == invoice["number"]
    assert data["invoice"]["client"]["email"] == "billing@acme.example.com"
    assert "stock_ledger" not in data["invoice"]
    assert data["settings"]["company_name"] == "My Company"


# ---------------- sending ----------------

def test_send_draft_invoice(client, auth, acme, mailer):
    invoice = create_invoice(client, auth, acme["id"])
    res = client.post(f"/invoices/{invoice['id']}/send", headers=auth)
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "sent"
    assert mailer.sent == [("invoice", invoice["number"], "billing@acme.example.com")]

    assert client.post(f"/invoices/{invoice['id']}/send", headers=auth).status_code == 400


def test_failed_delivery_keeps_draft(client, auth, acme, mailer):
    invoice = create_invoice(client, auth, acme["id"])
    mailer.fail = True
    res = client.post(f"/invoices/{invoice['id']}/send", headers=auth)
    assert res.status_code == 502
    assert client.get(f"/invoices/{invoice['id']}", headers=auth).json()["data"]["status"] == "draft"


# ---------------- stock ----------------

def stock_of(client, auth, product_id):
    return client.get(f"/products/{product_id}", headers=auth).json()["data"]["stock"]


def test_invoice_deducts_stock_by_name(client, auth, acme):
    product = client.post("/products", json={"name": "Widget", "price": 10, "stock": 10}, headers=auth).json()["data"]
    create_invoice(client, auth, acme["id"], items=[line(" Widget ", quantity=2, price=10)])
    assert stock_of(client, auth, product["id"]) == 8


def test_unmatched_item_leaves_stock_alone(client, auth, acme):
    product = client.post("/products", json={"name": "Widget", "stock": 10}, headers=auth).json()["data"]
    create_invoice(client, auth, acme["id"], items=[line("Gadget", quantity=3)])
    create_invoice(client, auth, acme["id"], items=[line("widget", quantity=3)])
    assert stock_of(client, auth, product["id"]) == 10


def test_stock_may_go_negative(client, auth, acme):
    product = client.post("/products", json={"name": "Widget", "stock": 1}, headers=auth).json()["data"]
    create_invoice(client, auth, acme["id"], items=[line("Other", quantity=4, product_id=product["id"])])
    assert stock_of(client, auth, product["id"]) == -3


def test_update_and_delete_reconcile_stock(client, auth, acme):
    product = client.post("/products", json={"name": "Widget", "stock": 10}, headers=auth).json()["data"]
    invoice = create_invoice(client, auth, acme["id"], items=[line(quantity=2)])
    assert stock_of(client, auth, product["id"]) == 8

    res = client.put(f"/invoices/{invoice['id']}", json={"client_id": acme["id"], "items": [line(quantity=5)]},
                     headers=auth)
    assert res.status_code == 200
    assert res.json()["data"]["history"][-1]["action"] == "updated"
    assert stock_of(client, auth, product["id"]) == 5

    assert client.delete(f"/invoices/{invoice['id']}", headers=auth).status_code == 200
    assert stock_of(client, auth, product["id"]) == 10
    assert client.get(f"/invoices/{invoice['id']}", headers=auth).status_code == 404


# ---------------- listing ----------------

def test_search_by_number_or_client_name(client, auth, acme):
    beta = client.post("/clients", json={"name": "Beta LLC", "email": "pay@beta.example.com"}, headers=auth)
    beta = beta.json()["data"]
    acme_invoice = create_invoice(client, auth, acme["id"])
    beta_invoice = create_invoice(client, auth, beta["id"])

    by_name = client.get("/invoices", params={"search": "acme"}, headers=auth).json()
    assert [i["id"] for i in by_name["data"]] == [acme_invoice["id"]]
    assert by_name["pagination"]["total"] == 1

    by_number = client.get("/invoices", params={"search": str(beta_invoice["number"])}, headers=auth).json()
    assert [i["id"] for i in by_number["data"]] == [beta_invoice["id"]]


def test_pagination_and_status_filter(client, auth, acme):
    for _ in range(3):
        create_invoice(client, auth, acme["id"])
    create_invoice(client, auth, acme["id"], status="sent")

    page = client.get("/invoices", params={"page": 2, "limit": 3}, headers=auth).json()
    assert page["pagination"] == {"total": 4, "page": 2, "limit": 3, "total_pages": 2}
    assert len(page["data"]) == 1

    sent = client.get("/invoices", params={"status": "sent"}, headers=auth).json()
    assert [i["status"] for i in sent["data"]] == ["sent"]


# ---------------- zero totals ----------------

def test_zero_total_invoice_is_paid(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=10)], discount=50, status="sent")
    assert invoice["total"] == 0
    assert invoice["payment_status"] == "paid"
    assert invoice["status"] == "paid"

    dashboard = client.get("/dashboard", headers=auth).json()["data"]
    assert dashboard["outstanding_count"] == 0
    assert client.post(f"/public/invoices/{invoice['id']}/pay").status_code == 400


def test_update_down_to_zero_total_marks_paid(client, auth, acme):
    invoice = create_invoice(client, auth, acme["id"], items=[line(price=10)], status="sent")
    assert invoice["payment_status"] == "unpaid"

    res = client.put(f"/invoices/{invoice['id']}", json={"client_id": acme["id"], "items": [line(price=10)],
                                                          "discount": 10}, headers=auth)
    updated = res.json()["data"]
    assert (updated["total"], updated["payment_status"], updated["status"]) == (0, "paid", "paid")
