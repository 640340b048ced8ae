import asyncio
import logging
import os
import secrets
import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import dashboard
import database
import invoices
import quotes
import reports
from database import contains, create_document, get_db, oid, owned, paginate, serialize_doc, utcnow, visible
from errors import AppError, Conflict, InvalidState, NotAuthenticated, NotFound
from jobs import DailyJob, sweep_overdue
from mailer import Mailer, get_mailer
from schemas import (
    Client, ClientIn, ClientUpdate, Expense, ExpenseIn, InvoiceIn, InvoiceStatusIn, PasswordChange,
    PaymentIn, Product, ProductIn, ProductUpdate, QuoteIn, QuoteStatusIn, SettingsUpdate, Token, User,
    UserCreate, UserLogin, UserOut,
)
from security import create_access_token, get_current_user, get_password_hash, require_admin, verify_password
from settings import find_settings, get_settings, update_settings

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("erp")


# ---------------- App Setup ----------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    job = None
    task = None
    if database.db is not None:
        database.ensure_indexes(database.db)
        if config.ENABLE_SCHEDULER:
            job = DailyJob("overdue-sweep", config.OVERDUE_SWEEP_AT, lambda: sweep_overdue(database.db))
            task = asyncio.create_task(job.run())
    else:
        logger.warning("DATABASE_URL not set; API will answer 503 on data routes")
    yield
    if job is not None:
        job.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Small Business ERP API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def ok(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_doc(data)
    body.update(extra)
    return body


def fail(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


# ---------------- Error handlers ----------------
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return fail(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    msg = first.get("msg", "Invalid input")
    return fail(400, f"{field}: {msg}" if field else msg)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return fail(409, "A record with this value already exists")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if config.is_production():
        return fail(500, "Internal Server Error")
    return fail(500, "Internal Server Error", stack=traceback.format_exception(type(exc), exc, exc.__traceback__))


# ---------------- Health ----------------
@app.get("/")
def read_root():
    return {"message": "ERP API running"}


@app.get("/test")
def database_status():
    """Backend liveness plus a round trip to MongoDB when one is configured."""
    status = {
        "backend": "running",
        "database": "not configured",
        "database_name": None,
        "collections": [],
    }
    if database.db is None:
        return status
    status["database_name"] = config.DATABASE_NAME
    try:
        status["collections"] = sorted(database.db.list_collection_names())[:10]
        status["database"] = "connected"
    except PyMongoError as e:
        logger.warning("Database status check failed: %s", e)
        status["database"] = f"error: {str(e)[:80]}"
    return status


# ---------------- Auth endpoints ----------------
def _user_out(user: Dict[str, Any]) -> UserOut:
    return UserOut(id=str(user.get("_id") or user.get("id")), name=user["name"], email=user["email"],
                   role=user.get("role", "user"))


@app.post("/auth/register", status_code=201)
def register(payload: UserCreate, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise Conflict("User with this email already exists")
    user = User(name=payload.name, email=payload.email, hashed_password=get_password_hash(payload.password))
    user_id = create_document(db, "user", user)
    logger.info("User %s registered", payload.email)
    return ok(_user_out({"_id": user_id, **user.model_dump()}).model_dump(), "User registered successfully")


@app.post("/auth/login")
def login(payload: UserLogin, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise NotAuthenticated("Invalid email or password")
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")})
    response.set_cookie(
        config.COOKIE_NAME, token,
        max_age=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True, secure=config.COOKIE_SECURE, samesite="lax",
    )
    return ok(Token(access_token=token, user=_user_out(user)).model_dump(), "Login successful")


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(config.COOKIE_NAME)
    return ok(message="Logged out")


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return ok(_user_out(current_user).model_dump())


@app.put("/auth/password")
def change_password(payload: PasswordChange, current_user: dict = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": oid(current_user["id"])})
    if not verify_password(payload.current_password, user.get("hashed_password", "")):
        raise InvalidState("Incorrect current password")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"hashed_password": get_password_hash(payload.new_password), "updated_at": utcnow()}},
    )
    return ok(message="Password updated successfully")


# ---------------- Clients ----------------
def _client_stats(db: Database, owner_id: str, client_id: str) -> Dict[str, Any]:
    rows = list(db["invoice"].aggregate([
        {"$match": visible(owned(owner_id, {"client_id": client_id, "status": {"$ne": "draft"}}))},
        {"$group": {"_id": None, "total": {"$sum": "$total"}, "paid": {"$sum": "$amount_paid"}}},
    ]))
    total = rows[0]["total"] if rows else 0
    paid = rows[0]["paid"] if rows else 0
    return {"total_invoiced": round(total, 2), "total_paid": round(paid, 2), "outstanding": round(total - paid, 2)}


def _ensure_unique_email(db: Database, owner_id: str, email: str, exclude=None) -> None:
    query = owned(owner_id, {"email": email})
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if db["client"].find_one(query):
        raise Conflict("A client with this email already exists")


@app.get("/clients")
def list_clients(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: str = "",
                 current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    query = visible(owned(current_user["id"]))
    if search.strip():
        query["$or"] = [{"name": contains(search.strip())}, {"email": contains(search.strip())}]
    docs, pagination = paginate(db, "client", query, page, limit)
    return ok(docs, pagination=pagination)


@app.post("/clients", status_code=201)
def create_client(payload: ClientIn, current_user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    _ensure_unique_email(db, current_user["id"], payload.email)
    client_id = create_document(db, "client", Client(**payload.model_dump(), created_by=current_user["id"]))
    return ok(db["client"].find_one({"_id": oid(client_id)}), "Client created")


@app.get("/clients/{client_id}")
def get_client(client_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    client = invoices.get_client(db, current_user["id"], client_id)
    client_invoices = db["invoice"].find(visible(owned(current_user["id"], {"client_id": client_id})))
    client["stats"] = _client_stats(db, current_user["id"], client_id)
    client["invoices"] = list(client_invoices.sort([("date", DESCENDING)]))
    return ok(client)


@app.put("/clients/{client_id}")
def update_client(client_id: str, payload: ClientUpdate, current_user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    client = invoices.get_client(db, current_user["id"], client_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("email") and changes["email"] != client.get("email"):
        _ensure_unique_email(db, current_user["id"], changes["email"], exclude=client["_id"])
    changes["updated_at"] = utcnow()
    doc = db["client"].find_one_and_update(
        {"_id": client["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(doc, "Client updated")


@app.delete("/clients/{client_id}")
def delete_client(client_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    client = invoices.get_client(db, current_user["id"], client_id)
    # soft delete; invoices still reference the client
    db["client"].update_one({"_id": client["_id"]}, {"$set": {"removed": True, "updated_at": utcnow()}})
    return ok(message="Client deleted successfully")


@app.post("/clients/{client_id}/portal-token")
def create_portal_token(client_id: str, current_user: dict = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    client = invoices.get_client(db, current_user["id"], client_id)
    token = secrets.token_urlsafe(24)
    db["client"].update_one({"_id": client["_id"]}, {"$set": {"portal_token": token, "updated_at": utcnow()}})
    return ok({"portal_token": token, "url": f"{config.FRONTEND_URL}/portal/{token}"})


# ---------------- Products ----------------
def _find_product(db: Database, owner_id: str, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one(owned(owner_id, {"_id": oid(product_id)}))
    if not product:
        raise NotFound("Product not found")
    return product


@app.get("/products")
def list_products(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: str = "",
                  current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    query = owned(current_user["id"])
    if search.strip():
        query["$or"] = [{"name": contains(search.strip())}, {"sku": contains(search.strip())}]
    docs, pagination = paginate(db, "product", query, page, limit)
    return ok(docs, pagination=pagination)


@app.post("/products", status_code=201)
def create_product(payload: ProductIn, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    product_id = create_document(db, "product", Product(**payload.model_dump(), created_by=current_user["id"]))
    return ok(db["product"].find_one({"_id": oid(product_id)}), "Product created")


@app.get("/products/{product_id}")
def get_product(product_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(_find_product(db, current_user["id"], product_id))


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    product = _find_product(db, current_user["id"], product_id)
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = utcnow()
    doc = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(doc, "Product updated")


@app.delete("/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    product = _find_product(db, current_user["id"], product_id)
    db["product"].delete_one({"_id": product["_id"]})
    return ok(message="Product deleted")


# ---------------- Invoices ----------------
@app.get("/invoices")
def list_invoices(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: str = "",
                  status: Optional[str] = None, current_user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    docs, pagination = invoices.list_invoices(db, current_user["id"], page, limit, search, status)
    return ok(docs, pagination=pagination)


@app.post("/invoices", status_code=201)
def create_invoice(payload: InvoiceIn, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return ok(invoices.create_invoice(db, current_user["id"], payload), "Invoice created")


@app.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(invoices.get_invoice(db, current_user["id"], invoice_id))


@app.put("/invoices/{invoice_id}")
def update_invoice(invoice_id: str, payload: InvoiceIn, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return ok(invoices.update_invoice(db, current_user["id"], invoice_id, payload), "Invoice updated")


@app.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    invoices.delete_invoice(db, current_user["id"], invoice_id)
    return ok(message="Invoice deleted successfully")


@app.post("/invoices/{invoice_id}/payment")
def record_payment(invoice_id: str, payload: PaymentIn, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    invoice = invoices.record_payment(db, current_user["id"], invoice_id, payload.amount, payload.method)
    return ok(invoice, "Payment recorded")


@app.post("/invoices/{invoice_id}/send")
def send_invoice(invoice_id: str, current_user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db), mailer: Mailer = Depends(get_mailer)):
    return ok(invoices.send_invoice(db, current_user["id"], invoice_id, mailer), "Invoice sent")


@app.patch("/invoices/{invoice_id}/status")
def set_invoice_status(invoice_id: str, payload: InvoiceStatusIn, current_user: dict = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    return ok(invoices.set_status(db, current_user["id"], invoice_id, payload.status), "Status updated")


# ---------------- Quotes ----------------
@app.get("/quotes")
def list_quotes(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: str = "",
                current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    docs, pagination = quotes.list_quotes(db, current_user["id"], page, limit, search)
    return ok(docs, pagination=pagination)


@app.post("/quotes", status_code=201)
def create_quote(payload: QuoteIn, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(quotes.create_quote(db, current_user["id"], payload), "Quote created")


@app.get("/quotes/{quote_id}")
def get_quote(quote_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(quotes.get_quote(db, current_user["id"], quote_id))


@app.put("/quotes/{quote_id}")
def update_quote(quote_id: str, payload: QuoteIn, current_user: dict = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    return ok(quotes.update_quote(db, current_user["id"], quote_id, payload), "Quote updated")


@app.delete("/quotes/{quote_id}")
def delete_quote(quote_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    quotes.delete_quote(db, current_user["id"], quote_id)
    return ok(message="Quote deleted")


@app.post("/quotes/{quote_id}/convert")
def convert_quote(quote_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(quotes.convert_quote(db, current_user["id"], quote_id), "Converted to Invoice")


@app.post("/quotes/{quote_id}/send")
def send_quote(quote_id: str, current_user: dict = Depends(get_current_user),
               db: Database = Depends(get_db), mailer: Mailer = Depends(get_mailer)):
    return ok(quotes.send_quote(db, current_user["id"], quote_id, mailer), "Quote sent")


@app.patch("/quotes/{quote_id}/status")
def set_quote_status(quote_id: str, payload: QuoteStatusIn, current_user: dict = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    return ok(quotes.set_quote_status(db, current_user["id"], quote_id, payload.status), "Status updated")


# ---------------- Expenses ----------------
@app.get("/expenses")
def list_expenses(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: str = "",
                  current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    query = owned(current_user["id"])
    if search.strip():
        query["$or"] = [{"description": contains(search.strip())}, {"category": contains(search.strip())}]
    docs, pagination = paginate(db, "expense", query, page, limit, sort=[("date", DESCENDING)])
    return ok(docs, pagination=pagination)


@app.post("/expenses", status_code=201)
def create_expense(payload: ExpenseIn, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    data = payload.model_dump()
    data["date"] = data["date"] or utcnow()
    expense_id = create_document(db, "expense", Expense(**data, created_by=current_user["id"]))
    return ok(db["expense"].find_one({"_id": oid(expense_id)}), "Expense recorded")


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: str, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    result = db["expense"].delete_one(owned(current_user["id"], {"_id": oid(expense_id)}))
    if result.deleted_count == 0:
        raise NotFound("Expense not found")
    return ok(message="Expense deleted")


# ---------------- Settings ----------------
@app.get("/settings")
def read_settings(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(get_settings(db, current_user["id"]))


@app.put("/settings")
def write_settings(payload: SettingsUpdate, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return ok(update_settings(db, current_user["id"], payload), "Settings updated")


# ---------------- Dashboard & reports ----------------
@app.get("/dashboard")
async def get_dashboard(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(await dashboard.build_dashboard(db, current_user["id"]))


@app.get("/dashboard/search")
def dashboard_search(q: str = "", current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(dashboard.search(db, current_user["id"], q))


@app.get("/reports/revenue-vs-expenses")
def revenue_vs_expenses(year: Optional[int] = Query(None, ge=2000, le=2100),
                        current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(reports.revenue_vs_expenses(db, current_user["id"], year or utcnow().year))


@app.get("/reports/expense-breakdown")
def expense_breakdown(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(reports.expense_breakdown(db, current_user["id"]))


@app.get("/reports/tax")
def tax_report(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(reports.tax_report(db, current_user["id"]))


# ---------------- Public (no auth) ----------------
@app.get("/public/invoices/{invoice_id}")
def public_invoice(invoice_id: str, db: Database = Depends(get_db)):
    invoice = invoices.attach_clients(db, [invoices.find_invoice(db, None, invoice_id)])[0]
    settings = find_settings(db, invoice["created_by"])
    invoice.pop("history", None)
    invoice.pop("stock_ledger", None)
    return ok({"invoice": invoice, "settings": settings})


@app.post("/public/invoices/{invoice_id}/pay")
def public_pay(invoice_id: str, db: Database = Depends(get_db)):
    """Demo checkout: settles the remaining balance without a payment gateway."""
    invoice = invoices.find_invoice(db, None, invoice_id)
    balance = round(invoice.get("total", 0) - invoice.get("amount_paid", 0), 2)
    if balance <= 0:
        raise InvalidState("Invoice is already paid")
    paid = invoices.record_payment(db, None, invoice_id, balance, method="online")
    return ok({"id": paid["_id"], "number": paid["number"], "status": paid["status"],
               "payment_status": paid["payment_status"], "amount_paid": paid["amount_paid"]},
              "Payment successful")


@app.get("/public/portal/{token}")
def client_portal(token: str, db: Database = Depends(get_db)):
    client = db["client"].find_one(visible({"portal_token": token}))
    if not client:
        raise NotFound("Portal link is invalid")
    client_invoices = list(
        db["invoice"].find(visible(owned(client["created_by"], {
            "client_id": str(client["_id"]),
            "status": {"$ne": "draft"},
        }))).sort([("date", DESCENDING)])
    )
    return ok({
        "client": {"name": client["name"], "email": client["email"]},
        "company": find_settings(db, client["created_by"]).get("company_name"),
        "invoices": [
            {"_id": i["_id"], "number": i["number"], "date": i["date"], "due_date": i["due_date"],
             "total": i.get("total", 0), "amount_paid": i.get("amount_paid", 0), "status": i["status"],
             "payment_status": i.get("payment_status"), "currency": i.get("currency")}
            for i in client_invoices
        ],
        "stats": _client_stats(db, client["created_by"], str(client["_id"])),
    })


# ---------------- Admin ----------------
@app.get("/admin/users")
def admin_list_users(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    users = db["user"].find({}, {"hashed_password": 0}).sort([("created_at", DESCENDING)])
    return ok(list(users))


@app.post("/admin/jobs/overdue-sweep")
def admin_overdue_sweep(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return ok({"modified": sweep_overdue(db)}, "Overdue sweep complete")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
