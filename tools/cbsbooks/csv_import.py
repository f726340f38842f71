"""
CSV import for invoices and expenses.

Expected columns, with a header row:

    invoices:  invoiceNumber,client,date,dueDate,total[,status]
    expenses:  date,payee,category,amount[,description]

Dates may be YYYY-MM-DD or MM/DD/YYYY. Amounts may carry "$" and thousands
separators. Rows whose invoice number already exists (case-insensitive,
including earlier rows of the same file) are skipped.

A CSV row has only a total, so each imported invoice gets a single line
item for that amount.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date

from tools.cbsbooks.errors import BooksError, FieldError
from tools.cbsbooks.models import Expense, Invoice, InvoiceItem, InvoiceStatus, is_iso_date
from tools.cbsbooks.totals import to_decimal

logger = logging.getLogger("cbs.csv_import")

MIN_COLUMNS = 5
IMPORTED_ITEM_DESCRIPTION = "Imported invoice total"


@dataclass
class CsvImportResult:
    invoices: list[Invoice] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)        # duplicate invoice numbers
    errors: list[FieldError] = field(default_factory=list)  # field = "row N"

    def to_dict(self) -> dict:
        return {
            "imported": len(self.invoices),
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
        }


def parse_csv_date(value: str, today: date | None = None) -> str:
    """Normalise a CSV date to YYYY-MM-DD. Blank means today."""
    value = (value or "").strip()
    if not value:
        return (today or date.today()).isoformat()
    if is_iso_date(value):
        return value
    parts = value.split("/")
    if len(parts) == 3:
        month, day, year = (p.strip() for p in parts)
        if len(year) == 2:
            year = f"20{year}"
        candidate = f"{year}-{month.zfill(2)}-{day.zfill(2)}"
        if is_iso_date(candidate):
            return candidate
    raise ValueError(f"unrecognised date '{value}'")


def parse_invoice_csv(
    text: str,
    existing_numbers: set[str] | None = None,
    today: date | None = None,
) -> CsvImportResult:
    """Turn CSV text into new draft/sent/paid invoices.

    Args:
        text:             Whole file contents, header row first.
        existing_numbers: Invoice numbers already in the ledger.
        today:            Fallback for blank dates.
    """
    today = today or date.today()
    seen = {n.strip().lower() for n in (existing_numbers or set())}
    result = CsvImportResult()

    rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
    for row_number, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        label = f"row {row_number}"
        if len(row) < MIN_COLUMNS:
            result.errors.append(FieldError(label, f"expected at least {MIN_COLUMNS} columns"))
            continue

        number = row[0].strip() or f"INV-{today:%Y%m%d}-{row_number}"
        if number.lower() in seen:
            logger.info("Skipping duplicate invoice %s", number)
            result.skipped.append(number)
            continue

        try:
            invoice_date = parse_csv_date(row[2], today)
            due_date = parse_csv_date(row[3], today)
            total = to_decimal(row[4].strip(), "total")
            status = InvoiceStatus.parse(row[5] if len(row) > 5 and row[5].strip() else "draft")
        except (ValueError, BooksError) as e:
            result.errors.append(FieldError(label, str(e)))
            continue

        result.invoices.append(Invoice(
            invoice_number=number,
            client_name=row[1].strip() or "Unknown",
            date=invoice_date,
            due_date=due_date,
            date_paid=invoice_date if status == InvoiceStatus.PAID else None,
            items=(InvoiceItem(description=IMPORTED_ITEM_DESCRIPTION, quantity=to_decimal(1), rate=total),),
            status=status,
        ))
        seen.add(number.lower())

    logger.info("CSV import parsed: %d new, %d duplicate, %d bad rows",
                len(result.invoices), len(result.skipped), len(result.errors))
    return result


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------

EXPENSE_MIN_COLUMNS = 4


@dataclass
class ExpenseCsvResult:
    expenses: list[Expense] = field(default_factory=list)
    errors: list[FieldError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "imported": len(self.expenses),
            "errors": [e.to_dict() for e in self.errors],
        }


def parse_expense_csv(text: str, today: date | None = None) -> ExpenseCsvResult:
    """Turn a bank or card export into expenses.

    Columns: date,payee,category,amount[,description]. Every good row is
    imported; there is no duplicate check.
    """
    today = today or date.today()
    result = ExpenseCsvResult()

    rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
    for row_number, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        label = f"row {row_number}"
        if len(row) < EXPENSE_MIN_COLUMNS:
            result.errors.append(FieldError(label, f"expected at least {EXPENSE_MIN_COLUMNS} columns"))
            continue
        try:
            expense_date = parse_csv_date(row[0], today)
            amount = to_decimal(row[3].strip(), "amount")
        except (ValueError, BooksError) as e:
            result.errors.append(FieldError(label, str(e)))
            continue

        description = row[4].strip() if len(row) > 4 else ""
        result.expenses.append(Expense(
            date=expense_date,
            payee=row[1].strip() or "Unknown",
            category=row[2].strip() or "Uncategorized",
            amount=amount,
            description=description or None,
        ))

    logger.info("Expense CSV parsed: %d new, %d bad rows", len(result.expenses), len(result.errors))
    return result
