"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name.

Request/response bodies used by the API live at the bottom of the file.
"""
from datetime import date, datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, EmailStr, Field

InvoiceStatus = Literal["draft", "pending", "sent", "paid", "overdue"]
PaymentStatus = Literal["unpaid", "partially", "paid"]
QuoteStatus = Literal["draft", "sent", "accepted", "rejected", "converted"]
ClientStatus = Literal["active", "inactive"]
Role = Literal["admin", "user"]
ExpenseCategory = Literal[
    "Operational", "Office", "Software", "Marketing", "Travel",
    "Utilities", "Rent", "Salaries", "Taxes", "Other",
]


def _coerce_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and len(value) == 10:
        return datetime.fromisoformat(value)
    return value


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDateTime = Annotated[datetime, BeforeValidator(_coerce_date), AfterValidator(_naive_utc)]
Currency = Annotated[str, Field(min_length=3, max_length=3), AfterValidator(str.upper)]


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Login e-mail")
    hashed_password: str
    role: Role = "user"


class Client(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[str] = None
    status: ClientStatus = "active"
    removed: bool = False
    created_by: str


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(0, ge=0)
    stock: int = Field(0, description="May go negative, no floor")
    sku: Optional[str] = None
    created_by: str


class LineItem(BaseModel):
    item_name: str = Field(..., min_length=1, description="Item name is required")
    description: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    total: float = 0
    product_id: Optional[str] = None


class Payment(BaseModel):
    amount: float
    method: str = "manual"
    at: datetime


class HistoryEntry(BaseModel):
    action: str
    user_id: Optional[str] = None
    at: datetime
    changes: Dict[str, Any] = Field(default_factory=dict)


class Invoice(BaseModel):
    number: int
    year: int
    date: datetime
    due_date: datetime
    client_id: str
    items: List[LineItem]
    notes: Optional[str] = None
    currency: str = "USD"
    sub_total: float = 0
    tax_rate: float = 0
    tax_total: float = 0
    discount: float = 0
    credit: float = 0
    total: float = 0
    amount_paid: float = 0
    status: InvoiceStatus = "draft"
    payment_status: PaymentStatus = "unpaid"
    payments: List[Payment] = Field(default_factory=list)
    converted: Optional[Dict[str, str]] = None
    stock_ledger: List[Dict[str, Any]] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    removed: bool = False
    created_by: str


class Quote(BaseModel):
    number: int
    title: str
    date: datetime
    due_date: datetime
    client_id: str
    items: List[LineItem]
    notes: Optional[str] = None
    currency: str = "USD"
    sub_total: float = 0
    tax_rate: float = 0
    tax_total: float = 0
    discount: float = 0
    total: float = 0
    status: QuoteStatus = "draft"
    converted_invoice_id: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    created_by: str


class Expense(BaseModel):
    description: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    category: ExpenseCategory = "Operational"
    date: datetime
    receipt: Optional[str] = Field(None, description="Receipt file reference")
    created_by: str


class Settings(BaseModel):
    user_id: str
    company_name: str = "My Company"
    company_email: Optional[str] = None
    company_phone: Optional[str] = None
    company_address: Optional[str] = None
    company_website: Optional[str] = None
    currency: str = "USD"
    tax_rate: float = Field(0, ge=0, le=100)
    invoice_prefix: str = "INV-"
    invoice_start_number: int = Field(1000, ge=1)
    quote_start_number: int = Field(1000, ge=1)
    default_payment_terms: int = Field(14, ge=0, description="Days until due")
    default_notes: Optional[str] = None


# ---------------- Request bodies ----------------

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role = "user"


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ClientIn(BaseModel):
    name: str = Field(..., min_length=1, description="Name is required")
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[str] = None
    status: ClientStatus = "active"


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: Optional[ClientStatus] = None


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(0, ge=0)
    stock: int = 0
    sku: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = None
    sku: Optional[str] = None


class InvoiceIn(BaseModel):
    client_id: str = Field(..., min_length=1, description="Client is required")
    date: Optional[UtcDateTime] = None
    due_date: Optional[UtcDateTime] = None
    items: List[LineItem] = Field(..., min_length=1, description="Invoice must have at least one item")
    notes: Optional[str] = None
    currency: Optional[Currency] = None
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    discount: float = Field(0, ge=0)
    credit: float = Field(0, ge=0)
    status: Optional[Literal["draft", "pending", "sent"]] = None


class PaymentIn(BaseModel):
    amount: float = Field(..., gt=0)
    method: str = "manual"


class InvoiceStatusIn(BaseModel):
    status: Literal["draft", "pending", "sent"]


class QuoteIn(BaseModel):
    title: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    date: Optional[UtcDateTime] = None
    due_date: Optional[UtcDateTime] = None
    items: List[LineItem] = Field(..., min_length=1)
    notes: Optional[str] = None
    currency: Optional[Currency] = None
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    discount: float = Field(0, ge=0)


class QuoteStatusIn(BaseModel):
    status: Literal["accepted", "rejected"]


class ExpenseIn(BaseModel):
    description: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    category: ExpenseCategory = "Operational"
    date: Optional[UtcDateTime] = None
    receipt: Optional[str] = None


class SettingsUpdate(BaseModel):
    company_name: Optional[str] = Field(None, min_length=1)
    company_email: Optional[str] = None
    company_phone: Optional[str] = None
    company_address: Optional[str] = None
    company_website: Optional[str] = None
    currency: Optional[Currency] = None
    tax_rate: Optional[float] = Field(None, ge=0, le=100)
    invoice_prefix: Optional[str] = None
    invoice_start_number: Optional[int] = Field(None, ge=1)
    quote_start_number: Optional[int] = Field(None, ge=1)
    default_payment_terms: Optional[int] = Field(None, ge=0)
    default_notes: Optional[str] = None
