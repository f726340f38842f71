"""
Ledger data model for CBS Books.

Invoice, InvoiceItem, Client (builder) and Expense value types. All of them
are frozen dataclasses: an edit is a ``dataclasses.replace`` that produces a
new value, so a line item's amount and an invoice's total can never drift
from the numbers they are derived from.

Wire format is the remote store's JSON: camelCase keys, money as numbers,
dates as YYYY-MM-DD strings.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from tools.cbsbooks.errors import FieldError, ValidationError
from tools.cbsbooks.totals import ZERO, line_amount, recompute_invoice_total, to_decimal

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> "InvoiceStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "draft").strip().lower())
        except ValueError:
            raise ValidationError.single("status", f"unknown status '{value}'")


def new_id() -> str:
    return str(uuid.uuid4())


def is_valid_email(value: str) -> bool:
    return bool(value) and EMAIL_RE.match(value.strip()) is not None


def is_iso_date(value: str) -> bool:
    """True for a real calendar date in YYYY-MM-DD form."""
    if not value or len(value) != 10:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def wire_number(value: Decimal) -> int | float:
    """Decimal → JSON number. Whole values stay ints."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _opt(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


# ---------------------------------------------------------------------------
# InvoiceItem
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InvoiceItem:
    """A single billable row. ``amount`` is always quantity × rate."""
    id: str = field(default_factory=new_id)
    description: str = ""
    quantity: Decimal = Decimal("1")
    rate: Decimal = ZERO

    @property
    def amount(self) -> Decimal:
        return line_amount(self.quantity, self.rate)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": wire_number(self.quantity),
            "rate": wire_number(self.rate),
            "amount": wire_number(self.amount),
        }

    @staticmethod
    def from_dict(data: dict) -> "InvoiceItem":
        """Build from wire JSON. A stored ``amount`` is ignored."""
        return InvoiceItem(
            id=str(data.get("id") or new_id()),
            description=str(data.get("description") or ""),
            quantity=to_decimal(data.get("quantity"), "quantity"),
            rate=to_decimal(data.get("rate"), "rate"),
        )


# ---------------------------------------------------------------------------
# Invoice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Invoice:
    """An invoice issued to a builder.

    ``client_name`` / ``client_email`` are a snapshot taken when the invoice
    is created; they are not looked up again if the builder changes.
    ``total`` is derived from ``items`` and never stored on its own.
    """
    id: str = field(default_factory=new_id)
    invoice_number: str = ""
    client_id: str | None = None
    client_name: str = ""
    client_email: str = ""
    project_details: str | None = None
    date: str = ""                      # YYYY-MM-DD
    due_date: str = ""                  # YYYY-MM-DD
    date_paid: str | None = None        # YYYY-MM-DD, set on transition to paid
    check_number: str | None = None
    payment_link: str | None = None
    items: tuple[InvoiceItem, ...] = ()
    status: InvoiceStatus = InvoiceStatus.DRAFT

    def __post_init__(self):
        # Accept lists from callers but keep the stored value immutable
        if not isinstance(self.items, tuple):
            object.__setattr__(self, "items", tuple(self.items))
        if not isinstance(self.status, InvoiceStatus):
            object.__setattr__(self, "status", InvoiceStatus.parse(self.status))

    @property
    def total(self) -> Decimal:
        return recompute_invoice_total(self.items)

    @property
    def short_id(self) -> str:
        return self.id[:8] if self.id else ""

    def with_items(self, items) -> "Invoice":
        return replace(self, items=tuple(items))

    def find_item(self, item_id: str) -> InvoiceItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoiceNumber": self.invoice_number,
            "clientId": self.client_id,
            "clientName": self.client_name,
            "clientEmail": self.client_email,
            "projectDetails": self.project_details,
            "date": self.date,
            "dueDate": self.due_date,
            "datePaid": self.date_paid,
            "checkNumber": self.check_number,
            "paymentLink": self.payment_link,
            "items": [item.to_dict() for item in self.items],
            "total": wire_number(self.total),
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict) -> "Invoice":
        """Build from wire JSON. A stored ``total`` is ignored."""
        items = data.get("items") or []
        return Invoice(
            id=str(data.get("id") or new_id()),
            invoice_number=str(data.get("invoiceNumber") or ""),
            client_id=_opt(data, "clientId"),
            client_name=str(data.get("clientName") or ""),
            client_email=str(data.get("clientEmail") or ""),
            project_details=_opt(data, "projectDetails"),
            date=str(data.get("date") or ""),
            due_date=str(data.get("dueDate") or ""),
            date_paid=_opt(data, "datePaid"),
            check_number=_opt(data, "checkNumber"),
            payment_link=_opt(data, "paymentLink"),
            items=tuple(InvoiceItem.from_dict(i) for i in items if isinstance(i, dict)),
            status=InvoiceStatus.parse(data.get("status")),
        )


# ---------------------------------------------------------------------------
# Client / Builder
# ---------------------------------------------------------------------------

ADDRESS_FIELDS = ("address_line1", "address_line2", "city", "state", "zip")


def legacy_address(line1=None, line2=None, city=None, state=None, zip_code=None) -> str:
    """Single-string address kept for older readers of the clients table."""
    parts = [p.strip() for p in (line1, line2, city, state, zip_code) if p and p.strip()]
    return " ".join(" ".join(parts).split())


@dataclass(frozen=True)
class Client:
    """A billed builder.

    When any structured address field is set, ``address`` is rebuilt from
    them every time a Client is constructed (and therefore on every save).
    """
    id: str = field(default_factory=new_id)
    company_name: str = ""
    email: str = ""
    check_payor_name: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    address: str | None = None

    def __post_init__(self):
        if self.has_structured_address:
            object.__setattr__(self, "address", legacy_address(
                self.address_line1, self.address_line2, self.city, self.state, self.zip,
            ))

    @property
    def has_structured_address(self) -> bool:
        return any(getattr(self, f) and getattr(self, f).strip() for f in ADDRESS_FIELDS)

    def validate(self) -> "Client":
        errors = []
        if not self.company_name.strip():
            errors.append(FieldError("companyName", "is required"))
        if not self.email.strip():
            errors.append(FieldError("email", "is required"))
        elif not is_valid_email(self.email):
            errors.append(FieldError("email", f"'{self.email}' is not a valid email address"))
        if errors:
            raise ValidationError(errors)
        return self

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "companyName": self.company_name,
            "email": self.email,
            "checkPayorName": self.check_payor_name,
            "addressLine1": self.address_line1,
            "addressLine2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "address": self.address,
        }

    @staticmethod
    def from_dict(data: dict) -> "Client":
        return Client(
            id=str(data.get("id") or new_id()),
            company_name=str(data.get("companyName") or ""),
            email=str(data.get("email") or ""),
            check_payor_name=_opt(data, "checkPayorName"),
            address_line1=_opt(data, "addressLine1"),
            address_line2=_opt(data, "addressLine2"),
            city=_opt(data, "city"),
            state=_opt(data, "state"),
            zip=_opt(data, "zip"),
            address=_opt(data, "address"),
        )


# ---------------------------------------------------------------------------
# Expense
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Expense:
    """A business expense. Only the reports read these."""
    id: str = field(default_factory=new_id)
    date: str = ""
    category: str = ""
    amount: Decimal = ZERO
    payee: str = ""
    description: str | None = None

    def validate(self) -> "Expense":
        errors = []
        if not is_iso_date(self.date):
            errors.append(FieldError("date", "must be a YYYY-MM-DD date"))
        if not self.category.strip():
            errors.append(FieldError("category", "is required"))
        if errors:
            raise ValidationError(errors)
        return self

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date,
            "payee": self.payee,
            "category": self.category,
            "amount": wire_number(self.amount),
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: dict) -> "Expense":
        return Expense(
            id=str(data.get("id") or new_id()),
            date=str(data.get("date") or ""),
            category=str(data.get("category") or ""),
            amount=to_decimal(data.get("amount"), "amount"),
            payee=str(data.get("payee") or ""),
            description=_opt(data, "description"),
        )
