"""
CBS Books REST API (/api/v1)

Thin HTTP adapter over InvoiceService. Every handler parses its input,
calls one service operation and returns ``to_dict()`` output; totals,
validation and status rules live in the service. Shared state is read from
``request.app.state`` (see interfaces/api/server.py).

Auth: optional API key via ``X-API-Key`` header. Set ``api.api_key`` in
config/settings.toml or the ``CBS_API_KEY`` env var. Empty key = open access.

Errors are raised as BooksError subclasses and turned into JSON responses
by the handlers registered in server.py.
"""

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tools.cbsbooks.models import Client, Expense, Invoice
from tools.cbsbooks.reports import ReportPeriod, SortKey, render_profit_and_loss
from tools.cbsbooks.service import InvoiceService

logger = logging.getLogger("cbs.api")

EVENT_EXPORT_DIR = Path("data/logs")

# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    request: Request,
    api_key: Optional[str] = Depends(_api_key_header),
):
    """Check X-API-Key against the configured key.

    If the configured key is empty (default), auth is disabled and all
    requests are allowed through. When a key is set, requests without
    a matching header receive 403.
    """
    configured_key: str = request.app.state.config.api.api_key
    if not configured_key:
        return  # open access
    if api_key != configured_key:
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


def get_service(request: Request) -> InvoiceService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

router = APIRouter(
    prefix="/api/v1",
    dependencies=[Depends(verify_api_key)],
)


# ---------------------------------------------------------------------------
# Pydantic request models (camelCase on the wire)
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self, only_set: bool = False) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude_unset=only_set)


class ItemBody(CamelModel):
    id: Optional[str] = None
    description: str = ""
    quantity: Decimal = Decimal("1")
    rate: Decimal = Decimal("0")


class InvoiceBody(CamelModel):
    invoice_number: Optional[str] = None
    client_id: Optional[str] = None
    client_name: str = ""
    client_email: str = ""
    project_details: Optional[str] = None
    date: Optional[str] = None
    due_date: Optional[str] = None
    date_paid: Optional[str] = None
    check_number: Optional[str] = None
    payment_link: Optional[str] = None
    items: Optional[list[ItemBody]] = None
    status: str = "draft"


class DraftBody(CamelModel):
    client_id: Optional[str] = None
    project_details: Optional[str] = None


class ItemFieldBody(CamelModel):
    field: str
    value: Any = None


class SendBody(CamelModel):
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    mark_sent: bool = True


class MarkPaidBody(CamelModel):
    check_number: str
    date_paid: Optional[str] = None


class BulkMarkPaidBody(MarkPaidBody):
    ids: list[str] = Field(default_factory=list)


class BulkDeleteBody(CamelModel):
    ids: list[str] = Field(default_factory=list)


class CheckNumberBody(CamelModel):
    check_number: Optional[str] = None


class ClientBody(CamelModel):
    company_name: str = ""
    email: str = ""
    check_payor_name: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    address: Optional[str] = None


class ExpenseBody(CamelModel):
    date: str = ""
    category: str = ""
    amount: Decimal = Decimal("0")
    payee: str = ""
    description: Optional[str] = None


def _with_id(body: CamelModel, entity_id: str | None = None,
             only_set: bool = False) -> dict[str, Any]:
    data = body.wire(only_set)
    if entity_id is not None:
        data["id"] = entity_id
    return data


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

# -- Invoices ----------------------------------------------------------------

@router.get("/invoices")
async def list_invoices(
    q: Optional[str] = None,
    status: Optional[str] = None,
    sort: SortKey = SortKey.DATE_DESC,
    service: InvoiceService = Depends(get_service),
):
    """Search, filter and sort invoices, with header stats for the same view."""
    invoices = service.list_invoices(query=q, status=status, sort=sort)
    return {
        "invoices": [inv.to_dict() for inv in invoices],
        "stats": service.stats(status=status, query=q).to_dict(),
    }


@router.post("/invoices")
async def create_invoice(body: InvoiceBody, service: InvoiceService = Depends(get_service)):
    """Create an invoice. A missing number, date or due date is filled in."""
    draft = service.new_invoice_draft()
    data = body.wire()
    data.setdefault("invoiceNumber", draft.invoice_number)
    data.setdefault("date", draft.date)
    data.setdefault("dueDate", draft.due_date)
    if body.items is None:
        data["items"] = [item.to_dict() for item in draft.items]
    invoice = await service.create_invoice(Invoice.from_dict(data))
    return {"ok": True, "invoice": invoice.to_dict()}


@router.post("/invoices/draft")
async def create_draft(body: DraftBody, service: InvoiceService = Depends(get_service)):
    """Create a draft for a builder with the default number, due date and item."""
    client = service.get_client(body.client_id) if body.client_id else None
    draft = service.new_invoice_draft(client, project_details=body.project_details)
    invoice = await service.create_invoice(draft)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.post("/invoices/mark-paid")
async def bulk_mark_paid(body: BulkMarkPaidBody, service: InvoiceService = Depends(get_service)):
    """Mark several invoices paid with one check."""
    invoices = await service.mark_paid_bulk(body.ids, body.check_number, body.date_paid)
    return {"ok": True, "invoices": [inv.to_dict() for inv in invoices]}


@router.post("/invoices/delete")
async def bulk_delete(body: BulkDeleteBody, service: InvoiceService = Depends(get_service)):
    deleted = await service.delete_invoices(body.ids)
    return {"ok": True, "deleted": deleted}


@router.post("/invoices/import")
async def import_invoices(request: Request, service: InvoiceService = Depends(get_service)):
    """Import invoices from a CSV request body."""
    text = (await request.body()).decode("utf-8-sig")
    result = await service.import_csv(text)
    return {"ok": True, **result.to_dict()}


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, service: InvoiceService = Depends(get_service)):
    return {"invoice": service.get_invoice(invoice_id).to_dict()}


@router.put("/invoices/{invoice_id}")
async def update_invoice(invoice_id: str, body: InvoiceBody,
                         service: InvoiceService = Depends(get_service)):
    existing = service.get_invoice(invoice_id)
    data = existing.to_dict()
    data.update(_with_id(body, invoice_id, only_set=True))
    invoice = await service.update_invoice(Invoice.from_dict(data))
    return {"ok": True, "invoice": invoice.to_dict()}


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(invoice_id: str, service: InvoiceService = Depends(get_service)):
    await service.delete_invoice(invoice_id)
    return {"ok": True}


@router.post("/invoices/{invoice_id}/items")
async def add_item(invoice_id: str, body: ItemBody, service: InvoiceService = Depends(get_service)):
    invoice = await service.add_item(invoice_id, body.description, body.quantity, body.rate)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.patch("/invoices/{invoice_id}/items/{item_id}")
async def update_item(invoice_id: str, item_id: str, body: ItemFieldBody,
                      service: InvoiceService = Depends(get_service)):
    invoice = await service.update_item(invoice_id, item_id, body.field, body.value)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.delete("/invoices/{invoice_id}/items/{item_id}")
async def remove_item(invoice_id: str, item_id: str, service: InvoiceService = Depends(get_service)):
    invoice = await service.remove_item(invoice_id, item_id)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.post("/invoices/{invoice_id}/mark-sent")
async def mark_sent(invoice_id: str, service: InvoiceService = Depends(get_service)):
    invoice = await service.mark_sent(invoice_id)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.post("/invoices/{invoice_id}/mark-paid")
async def mark_paid(invoice_id: str, body: MarkPaidBody,
                    service: InvoiceService = Depends(get_service)):
    invoice = await service.mark_paid(invoice_id, body.check_number, body.date_paid)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.put("/invoices/{invoice_id}/check-number")
async def set_check_number(invoice_id: str, body: CheckNumberBody,
                           service: InvoiceService = Depends(get_service)):
    invoice = await service.set_check_number(invoice_id, body.check_number)
    return {"ok": True, "invoice": invoice.to_dict()}


@router.post("/invoices/{invoice_id}/send")
async def send_invoice(invoice_id: str, body: SendBody,
                       service: InvoiceService = Depends(get_service)):
    """Email the invoice PDF; drafts are marked sent afterwards."""
    result = await service.send_invoice(
        invoice_id,
        recipient=body.recipient,
        subject=body.subject,
        body_text=body.body,
        mark_sent=body.mark_sent,
    )
    return {"ok": True, **result.to_dict()}


@router.get("/invoices/{invoice_id}/pdf")
async def download_pdf(invoice_id: str, service: InvoiceService = Depends(get_service)):
    artifact = service.render(invoice_id)
    return Response(
        content=artifact.data,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


# -- Clients -----------------------------------------------------------------

@router.get("/clients")
async def list_clients(service: InvoiceService = Depends(get_service)):
    clients = sorted(service.clients(), key=lambda c: c.company_name.lower())
    return {"clients": [c.to_dict() for c in clients]}


@router.get("/clients/{client_id}")
async def get_client(client_id: str, service: InvoiceService = Depends(get_service)):
    return {"client": service.get_client(client_id).to_dict()}


@router.post("/clients")
async def create_client(body: ClientBody, service: InvoiceService = Depends(get_service)):
    client = await service.create_client(Client.from_dict(body.wire()))
    return {"ok": True, "client": client.to_dict()}


@router.put("/clients/{client_id}")
async def update_client(client_id: str, body: ClientBody,
                        service: InvoiceService = Depends(get_service)):
    client = await service.update_client(Client.from_dict(_with_id(body, client_id)))
    return {"ok": True, "client": client.to_dict()}


@router.delete("/clients/{client_id}")
async def delete_client(client_id: str, service: InvoiceService = Depends(get_service)):
    await service.delete_client(client_id)
    return {"ok": True}


# -- Expenses ----------------------------------------------------------------

@router.get("/expenses")
async def list_expenses(service: InvoiceService = Depends(get_service)):
    expenses = sorted(service.expenses(), key=lambda e: e.date, reverse=True)
    return {"expenses": [e.to_dict() for e in expenses]}


@router.post("/expenses")
async def create_expense(body: ExpenseBody, service: InvoiceService = Depends(get_service)):
    expense = await service.create_expense(Expense.from_dict(body.wire()))
    return {"ok": True, "expense": expense.to_dict()}


@router.post("/expenses/delete")
async def bulk_delete_expenses(body: BulkDeleteBody, service: InvoiceService = Depends(get_service)):
    deleted = await service.delete_expenses(body.ids)
    return {"ok": True, "deleted": deleted}


@router.post("/expenses/import")
async def import_expenses(request: Request, service: InvoiceService = Depends(get_service)):
    """Import expenses from a CSV request body (date,payee,category,amount[,description])."""
    text = (await request.body()).decode("utf-8-sig")
    result = await service.import_expenses_csv(text)
    return {"ok": True, **result.to_dict()}


@router.put("/expenses/{expense_id}")
async def update_expense(expense_id: str, body: ExpenseBody,
                         service: InvoiceService = Depends(get_service)):
    expense = await service.update_expense(Expense.from_dict(_with_id(body, expense_id)))
    return {"ok": True, "expense": expense.to_dict()}


@router.delete("/expenses/{expense_id}")
async def delete_expense(expense_id: str, service: InvoiceService = Depends(get_service)):
    await service.delete_expense(expense_id)
    return {"ok": True}


# -- Reports -----------------------------------------------------------------

@router.get("/reports/pnl")
async def get_profit_and_loss(
    period: ReportPeriod = ReportPeriod.YTD,
    year: Optional[int] = None,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    service: InvoiceService = Depends(get_service),
):
    report = service.report(period, year=year, month=month, quarter=quarter)
    return {"report": report.to_dict()}


@router.get("/reports/pnl.pdf")
async def download_profit_and_loss(
    period: ReportPeriod = ReportPeriod.YTD,
    year: Optional[int] = None,
    month: Optional[int] = None,
    quarter: Optional[int] = None,
    service: InvoiceService = Depends(get_service),
):
    report = service.report(period, year=year, month=month, quarter=quarter)
    artifact = render_profit_and_loss(report, service.sender)
    return Response(
        content=artifact.data,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


# -- Backup & sync -----------------------------------------------------------

@router.get("/backup")
async def get_backup(service: InvoiceService = Depends(get_service)):
    return service.backup()


@router.post("/refresh")
async def refresh(clear_cache: bool = False, service: InvoiceService = Depends(get_service)):
    """Reload every collection from the remote store, optionally wiping the disk cache first."""
    cleared = service.clear_cache() if clear_cache else 0
    counts = await service.load(force_refresh=True)
    return {"ok": True, "counts": counts, "cache_files_cleared": cleared}


@router.get("/status")
async def get_status(request: Request, service: InvoiceService = Depends(get_service)):
    return {
        "loaded": service.loaded_resources(),
        "event_count": request.app.state.event_logger.count,
    }


# -- Events ------------------------------------------------------------------

@router.get("/events")
async def get_events(request: Request, count: int = 200, entity: Optional[str] = None):
    """Return recent activity, or everything logged about one entity."""
    event_logger = request.app.state.event_logger
    if entity:
        return {"events": event_logger.for_entity(entity)}
    return {"events": event_logger.get_recent(count)}


@router.post("/events/export")
async def export_events(request: Request):
    """Write every buffered event to data/logs/ as JSON."""
    filepath = EVENT_EXPORT_DIR / f"events_{datetime.now():%Y%m%d_%H%M%S}.json"
    count = request.app.state.event_logger.export_json(filepath)
    return {"ok": True, "filepath": str(filepath), "event_count": count}
