"""
Ledger queries and profit & loss reporting.

Search, filter and sort over invoice snapshots, the outstanding/YTD stats
shown above the invoice list, and a P&L statement for a month, quarter,
year or year-to-date. The P&L can be downloaded as a PDF.

All functions take plain lists and return new ones; nothing here talks to
the remote store.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from fpdf import FPDF

from tools.cbsbooks.errors import RenderError, ValidationError
from tools.cbsbooks.models import Expense, Invoice, InvoiceStatus, wire_number
from tools.cbsbooks.renderer import DocumentArtifact, SenderProfile, safe_text
from tools.cbsbooks.totals import ZERO, format_whole_currency

logger = logging.getLogger("cbs.reports")


class SortKey(str, Enum):
    DATE_DESC = "date-desc"
    DATE_ASC = "date-asc"
    CLIENT_ASC = "client-asc"
    CLIENT_DESC = "client-desc"
    TOTAL_DESC = "total-desc"
    TOTAL_ASC = "total-asc"


class ReportPeriod(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    YTD = "ytd"


# ---------------------------------------------------------------------------
# Invoice queries
# ---------------------------------------------------------------------------

def search_invoices(invoices: list[Invoice], query: str | None) -> list[Invoice]:
    """Case-insensitive match on client, number, project, items and check number."""
    if not query:
        return list(invoices)
    needle = query.lower()

    def matches(inv: Invoice) -> bool:
        fields = [inv.client_name, inv.invoice_number, inv.project_details or "",
                  inv.check_number or ""]
        fields.extend(item.description for item in inv.items)
        return any(needle in value.lower() for value in fields)

    return [inv for inv in invoices if matches(inv)]


def filter_invoices(invoices: list[Invoice], status: InvoiceStatus | str | None) -> list[Invoice]:
    """Keep one status. None or "all" keeps everything."""
    if status is None or status == "all":
        return list(invoices)
    status = InvoiceStatus.parse(status)
    return [inv for inv in invoices if inv.status == status]


def sort_invoices(invoices: list[Invoice], key: SortKey | str = SortKey.DATE_DESC) -> list[Invoice]:
    try:
        key = SortKey(key)
    except ValueError:
        raise ValidationError.single("sort", f"unknown sort key '{key}'")

    field_name, direction = key.value.split("-")
    if field_name == "date":
        sort_value = lambda inv: inv.date
    elif field_name == "client":
        sort_value = lambda inv: inv.client_name.lower()
    else:
        sort_value = lambda inv: inv.total
    return sorted(invoices, key=sort_value, reverse=direction == "desc")


@dataclass(frozen=True)
class InvoiceStats:
    outstanding: Decimal
    ytd: Decimal
    count: int

    def to_dict(self) -> dict:
        return {
            "outstanding": wire_number(self.outstanding),
            "ytd": wire_number(self.ytd),
            "count": self.count,
        }


def invoice_stats(
    invoices: list[Invoice],
    status_filter: InvoiceStatus | str | None = None,
    year: int | None = None,
) -> InvoiceStats:
    """Outstanding and year-to-date figures for the invoice list header.

    ``outstanding`` depends on the status being viewed: sent totals for
    "all" and "sent", draft totals for "draft", and 0 for "paid".
    ``ytd`` is always the paid invoices dated in ``year``.
    """
    year = year or date.today().year
    ytd = sum(
        (inv.total for inv in invoices
         if inv.status == InvoiceStatus.PAID and inv.date[:4] == str(year)),
        ZERO,
    )

    if status_filter is None or status_filter == "all":
        owing = InvoiceStatus.SENT
    else:
        owing = InvoiceStatus.parse(status_filter)
    if owing == InvoiceStatus.PAID:
        outstanding = ZERO
    else:
        outstanding = sum((inv.total for inv in invoices if inv.status == owing), ZERO)

    return InvoiceStats(outstanding=outstanding, ytd=ytd, count=len(invoices))


# ---------------------------------------------------------------------------
# Profit & loss
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfitAndLoss:
    period: ReportPeriod
    label: str
    start: str                          # YYYY-MM-DD, inclusive
    end: str                            # YYYY-MM-DD, inclusive
    total_income: Decimal
    total_expenses: Decimal
    expense_categories: dict[str, Decimal] = field(default_factory=dict)
    invoice_count: int = 0
    expense_count: int = 0

    @property
    def net_profit(self) -> Decimal:
        return self.total_income - self.total_expenses

    def to_dict(self) -> dict:
        return {
            "period": self.period.value,
            "label": self.label,
            "start": self.start,
            "end": self.end,
            "total_income": wire_number(self.total_income),
            "total_expenses": wire_number(self.total_expenses),
            "net_profit": wire_number(self.net_profit),
            "expense_categories": {k: wire_number(v) for k, v in self.expense_categories.items()},
            "invoice_count": self.invoice_count,
            "expense_count": self.expense_count,
        }


def period_bounds(
    period: ReportPeriod | str,
    year: int | None = None,
    month: int | None = None,
    quarter: int | None = None,
    today: date | None = None,
) -> tuple[date, date, str]:
    """(start, end, label) for a reporting period.

    ``month`` is 1-12 and ``quarter`` 1-4; both default to the ones
    containing ``today``.
    """
    try:
        period = ReportPeriod(period)
    except ValueError:
        raise ValidationError.single("period", f"unknown report period '{period}'")
    today = today or date.today()
    year = year or today.year

    if period == ReportPeriod.MONTHLY:
        month = month or today.month
        if not 1 <= month <= 12:
            raise ValidationError.single("month", "must be between 1 and 12")
        last = calendar.monthrange(year, month)[1]
        return date(year, month, 1), date(year, month, last), f"{calendar.month_name[month]} {year}"
    if period == ReportPeriod.QUARTERLY:
        quarter = quarter or (today.month - 1) // 3 + 1
        if not 1 <= quarter <= 4:
            raise ValidationError.single("quarter", "must be between 1 and 4")
        first_month = (quarter - 1) * 3 + 1
        last_month = first_month + 2
        last = calendar.monthrange(year, last_month)[1]
        return date(year, first_month, 1), date(year, last_month, last), f"Q{quarter} {year}"
    if period == ReportPeriod.YEARLY:
        return date(year, 1, 1), date(year, 12, 31), str(year)
    return date(today.year, 1, 1), today, f"YTD {today.year}"


def profit_and_loss(
    invoices: list[Invoice],
    expenses: list[Expense],
    period: ReportPeriod | str = ReportPeriod.YTD,
    year: int | None = None,
    month: int | None = None,
    quarter: int | None = None,
    today: date | None = None,
) -> ProfitAndLoss:
    """P&L over one period. Income is every invoice dated in the period."""
    start, end, label = period_bounds(period, year, month, quarter, today)
    start_s, end_s = start.isoformat(), end.isoformat()

    in_range_invoices = [inv for inv in invoices if start_s <= inv.date <= end_s]
    in_range_expenses = [exp for exp in expenses if start_s <= exp.date <= end_s]

    categories: dict[str, Decimal] = {}
    for exp in in_range_expenses:
        categories[exp.category] = categories.get(exp.category, ZERO) + exp.amount

    return ProfitAndLoss(
        period=ReportPeriod(period),
        label=label,
        start=start_s,
        end=end_s,
        total_income=sum((inv.total for inv in in_range_invoices), ZERO),
        total_expenses=sum((exp.amount for exp in in_range_expenses), ZERO),
        expense_categories=dict(sorted(categories.items())),
        invoice_count=len(in_range_invoices),
        expense_count=len(in_range_expenses),
    )


def render_profit_and_loss(report: ProfitAndLoss, sender: SenderProfile,
                           generated_on: date | None = None) -> DocumentArtifact:
    """P&L statement as a one-page PDF."""
    generated_on = generated_on or date.today()
    try:
        pdf = FPDF()
        pdf.creation_date = datetime(generated_on.year, generated_on.month, generated_on.day,
                                     tzinfo=timezone.utc)
        pdf.add_page()
        pdf.set_auto_page_break(auto=True, margin=15)

        pdf.set_font("Helvetica", "B", 20)
        pdf.cell(0, 10, "Profit & Loss Statement", new_x="LMARGIN", new_y="NEXT")
        pdf.set_font("Helvetica", "", 10)
        pdf.set_text_color(100)
        pdf.cell(0, 5, f"Generated on: {generated_on.isoformat()}", new_x="LMARGIN", new_y="NEXT")
        pdf.cell(0, 5, safe_text(f"Period: {report.label}"), new_x="LMARGIN", new_y="NEXT")
        pdf.cell(0, 5, safe_text(sender.name), new_x="LMARGIN", new_y="NEXT")
        pdf.set_text_color(0)
        pdf.ln(6)

        pdf.set_fill_color(240, 240, 240)
        pdf.set_font("Helvetica", "B", 12)
        pdf.cell(140, 8, "  Total Income", fill=True)
        pdf.cell(0, 8, format_whole_currency(report.total_income), align="R", fill=True,
                 new_x="LMARGIN", new_y="NEXT")
        pdf.ln(4)

        pdf.cell(0, 8, "  Expenses", new_x="LMARGIN", new_y="NEXT")
        pdf.set_font("Helvetica", "", 10)
        for category, amount in report.expense_categories.items():
            pdf.cell(140, 7, safe_text(f"      {category or 'Uncategorized'}"))
            pdf.cell(0, 7, format_whole_currency(amount), align="R", new_x="LMARGIN", new_y="NEXT")
        pdf.set_font("Helvetica", "B", 10)
        pdf.cell(140, 7, "  Total Expenses")
        pdf.cell(0, 7, format_whole_currency(report.total_expenses), align="R",
                 new_x="LMARGIN", new_y="NEXT")
        pdf.ln(4)

        pdf.set_font("Helvetica", "B", 14)
        pdf.cell(140, 10, "  Net Profit", fill=True)
        pdf.cell(0, 10, format_whole_currency(report.net_profit), align="R", fill=True,
                 new_x="LMARGIN", new_y="NEXT")

        data = bytes(pdf.output())
    except Exception as e:
        raise RenderError(f"Failed to render P&L for {report.label}: {e}") from e

    stem = report.label.replace(" ", "_")
    return DocumentArtifact(data=data, filename=f"PnL_{stem}.pdf", page_count=pdf.pages_count)
