"""
InvoiceService: every ledger operation in one place.

The REST router and the terminal both go through this class, so totals,
validation, status rules and the send sequence are implemented once.

Writes follow the same pattern throughout: validate locally, write to the
remote store, and only then put the saved entity into the in-memory
collection. A failed write leaves the collections exactly as they were.

Usage:
    service = InvoiceService.from_config(get_config())
    await service.load()
    draft = service.new_invoice_draft(client)
    invoice = await service.create_invoice(draft)
    await service.send_invoice(invoice.id)
"""

import json
import logging
import random
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

import httpx

from core.event_logger import EventLogger
from tools.cbsbooks import status as status_machine
from tools.cbsbooks.csv_import import (
    CsvImportResult,
    ExpenseCsvResult,
    parse_expense_csv,
    parse_invoice_csv,
)
from tools.cbsbooks.dispatch import (
    DeliveryReceipt,
    EmailDispatcher,
    attachment_from_payload,
    build_invoice_email,
    render_html_body,
    transport_from_config,
)
from tools.cbsbooks.errors import (
    DispatchError,
    FieldError,
    NotFoundError,
    PaymentLinkError,
    SyncError,
    TransitionError,
    ValidationError,
)
from tools.cbsbooks.models import (
    Client,
    Expense,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    is_iso_date,
    is_valid_email,
)
from tools.cbsbooks.payments import PaymentLinkClient
from tools.cbsbooks.renderer import DocumentArtifact, SenderProfile, render_invoice_document
from tools.cbsbooks.reports import (
    InvoiceStats,
    ProfitAndLoss,
    ReportPeriod,
    SortKey,
    filter_invoices,
    invoice_stats,
    profit_and_loss,
    search_invoices,
    sort_invoices,
)
from tools.cbsbooks.sync import RESOURCES, BulkWriteError, SyncContext, SyncedCollection
from tools.cbsbooks.totals import ZERO, recompute_item, to_decimal

logger = logging.getLogger("cbs.service")

DEFAULT_ITEM_DESCRIPTION = "Walk through and warranty management services"
BACKUP_VERSION = "1.0"


@dataclass(frozen=True)
class SendResult:
    """Outcome of send_invoice: the delivery receipt and the invoice as saved."""
    receipt: DeliveryReceipt
    invoice: Invoice

    def to_dict(self) -> dict:
        return {"receipt": self.receipt.to_dict(), "invoice": self.invoice.to_dict()}


class InvoiceService:
    """Session-scoped facade over the synced collections.

    Args:
        context:     SyncContext for this session.
        sender:      Profile printed on invoices and used to sign emails.
        dispatcher:  Email dispatcher. Without one, send_invoice raises
                     DispatchError.
        payments:    Payment-link client. Without one, links are never
                     generated automatically.
        events:      Activity log. A private one is created if omitted.
        number_prefix, due_days, default_item_description:
                     New-draft defaults.
        today:       Clock, injectable for tests.
    """

    def __init__(
        self,
        context: SyncContext,
        sender: SenderProfile,
        dispatcher: EmailDispatcher | None = None,
        payments: PaymentLinkClient | None = None,
        events: EventLogger | None = None,
        number_prefix: str = "INV",
        due_days: int = 30,
        default_item_description: str = DEFAULT_ITEM_DESCRIPTION,
        today: Callable[[], date] = date.today,
    ):
        self.context = context
        self.sender = sender
        self.dispatcher = dispatcher
        self.payments = payments
        self.events = events or EventLogger()
        self.number_prefix = number_prefix
        self.due_days = due_days
        self.default_item_description = default_item_description
        self._today = today

        self.invoice_store: SyncedCollection[Invoice] = SyncedCollection(
            context, "invoices", Invoice.from_dict)
        self.client_store: SyncedCollection[Client] = SyncedCollection(
            context, "clients", Client.from_dict)
        self.expense_store: SyncedCollection[Expense] = SyncedCollection(
            context, "expenses", Expense.from_dict)

    @classmethod
    def from_config(cls, config, events: EventLogger | None = None,
                    client: httpx.AsyncClient | None = None) -> "InvoiceService":
        """Wire a service from settings.

        ``client`` replaces the remote store's HTTP client (tests pass one
        backed by httpx.MockTransport).
        """
        return cls(
            context=SyncContext.from_config(config, client=client),
            sender=SenderProfile.from_config(config),
            dispatcher=EmailDispatcher(transport_from_config(config)),
            payments=PaymentLinkClient.from_config(config),
            events=events or EventLogger(max_events=config.events.max_events),
            number_prefix=config.invoices.number_prefix,
            due_days=config.invoices.due_days,
            default_item_description=config.invoices.default_item_description,
        )

    # -------------------------------------------------------------------
    # Loading & snapshots
    # -------------------------------------------------------------------

    async def load(self, force_refresh: bool = False) -> dict[str, int]:
        """Load all three collections. Returns record counts."""
        invoices = await self.invoice_store.list(force_refresh)
        clients = await self.client_store.list(force_refresh)
        expenses = await self.expense_store.list(force_refresh)
        counts = {"invoices": len(invoices), "clients": len(clients), "expenses": len(expenses)}
        logger.info("Ledger loaded: %d invoices, %d clients, %d expenses",
                    counts["invoices"], counts["clients"], counts["expenses"])
        return counts

    def loaded_resources(self) -> list[str]:
        """Collections that have had at least one successful remote read."""
        return [name for name in RESOURCES if self.context.has_loaded(name)]

    def clear_cache(self) -> int:
        """Delete the on-disk copies of every collection. Returns files removed."""
        if self.context.cache is None:
            return 0
        removed = self.context.cache.clear()
        logger.info("Cleared %d cache file(s)", removed)
        return removed

    async def wait_idle(self):
        for store in (self.invoice_store, self.client_store, self.expense_store):
            await store.wait_idle()

    def invoices(self) -> list[Invoice]:
        return self.invoice_store.snapshot()

    def clients(self) -> list[Client]:
        return self.client_store.snapshot()

    def expenses(self) -> list[Expense]:
        return self.expense_store.snapshot()

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoice_store.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def find_invoice_by_number(self, invoice_number: str) -> Invoice:
        wanted = invoice_number.strip().lower()
        for invoice in self.invoice_store.snapshot():
            if invoice.invoice_number.lower() == wanted:
                return invoice
        raise NotFoundError("Invoice", invoice_number)

    def get_client(self, client_id: str) -> Client:
        client = self.client_store.get(client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        return client

    def get_expense(self, expense_id: str) -> Expense:
        expense = self.expense_store.get(expense_id)
        if expense is None:
            raise NotFoundError("Expense", expense_id)
        return expense

    def list_invoices(
        self,
        query: str | None = None,
        status: InvoiceStatus | str | None = None,
        sort: SortKey | str = SortKey.DATE_DESC,
    ) -> list[Invoice]:
        matching = search_invoices(self.invoices(), query)
        return sort_invoices(filter_invoices(matching, status), sort)

    def stats(self, status: InvoiceStatus | str | None = None, query: str | None = None,
              year: int | None = None) -> InvoiceStats:
        return invoice_stats(search_invoices(self.invoices(), query), status,
                             year or self._today().year)

    # -------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------

    def _generate_invoice_number(self) -> str:
        taken = {inv.invoice_number.lower() for inv in self.invoice_store.snapshot()}
        while True:
            number = f"{self.number_prefix}-{random.randint(0, 999999):06d}"
            if number.lower() not in taken:
                return number

    def new_invoice_draft(
        self,
        client: Client | None = None,
        project_details: str | None = None,
        issue_date: date | None = None,
    ) -> Invoice:
        """An unsaved draft with a fresh number, due date and default item."""
        issued = issue_date or self._today()
        return Invoice(
            invoice_number=self._generate_invoice_number(),
            client_id=client.id if client else None,
            client_name=client.company_name if client else "",
            client_email=client.email if client else "",
            project_details=project_details,
            date=issued.isoformat(),
            due_date=(issued + timedelta(days=self.due_days)).isoformat(),
            items=(InvoiceItem(description=self.default_item_description,
                               quantity=Decimal("1"), rate=ZERO),),
            status=InvoiceStatus.DRAFT,
        )

    def _check_invoice_fields(self, invoice: Invoice, exclude_id: str | None = None):
        errors = []
        if not invoice.invoice_number.strip():
            errors.append(FieldError("invoiceNumber", "is required"))
        else:
            wanted = invoice.invoice_number.strip().lower()
            for other in self.invoice_store.snapshot():
                if other.id != exclude_id and other.invoice_number.strip().lower() == wanted:
                    errors.append(FieldError("invoiceNumber",
                                             f"'{invoice.invoice_number}' is already in use"))
                    break
        for name, value in (("date", invoice.date), ("dueDate", invoice.due_date),
                            ("datePaid", invoice.date_paid)):
            if value and not is_iso_date(value):
                errors.append(FieldError(name, "must be a YYYY-MM-DD date"))
        if invoice.date_paid and invoice.status != InvoiceStatus.PAID:
            errors.append(FieldError("datePaid", "only paid invoices have a payment date"))
        if invoice.client_email and not is_valid_email(invoice.client_email):
            errors.append(FieldError("clientEmail", f"'{invoice.client_email}' is not a valid email address"))
        if errors:
            raise ValidationError(errors)

    async def _with_payment_link(self, invoice: Invoice) -> Invoice:
        """Attach a payment link when the invoice is billable and has none."""
        if (self.payments is None or invoice.payment_link
                or invoice.status == InvoiceStatus.PAID or invoice.total <= 0):
            return invoice
        description = invoice.client_name
        if invoice.project_details:
            description = f"{description} - {invoice.project_details}"
        try:
            url = await self.payments.create_payment_link(
                invoice.id, invoice.total, f"Invoice #{invoice.invoice_number}", description,
            )
        except PaymentLinkError as e:
            self.events.warn("payments", "Payment link not created, saving without one",
                             invoice_id=invoice.id, invoice_number=invoice.invoice_number,
                             error=str(e))
            return invoice
        return replace(invoice, payment_link=url)

    async def _save(self, invoice: Invoice) -> Invoice:
        saved = await self.invoice_store.update(invoice)
        self.invoice_store.apply_local(saved)
        return saved

    def _transition(self, invoice: Invoice, target: InvoiceStatus,
                    check_number: str | None, date_paid: str | None) -> Invoice:
        if target == InvoiceStatus.SENT:
            return status_machine.mark_sent(invoice)
        if target == InvoiceStatus.PAID:
            return status_machine.mark_paid(invoice, check_number, date_paid, today=self._today())
        raise TransitionError(invoice.status.value, target.value, "status changes only move forward")

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        """Save a new invoice.

        Every invoice starts as a draft. Asking for sent or paid runs the same
        checks as mark_sent and mark_paid before anything is written.
        """
        self._check_invoice_fields(invoice)
        if invoice.status != InvoiceStatus.DRAFT:
            draft = replace(invoice, status=InvoiceStatus.DRAFT, date_paid=None)
            invoice = self._transition(draft, invoice.status, invoice.check_number, invoice.date_paid)
        invoice = await self._with_payment_link(invoice)
        saved = await self.invoice_store.add(invoice)
        self.invoice_store.apply_local(saved)
        self.events.info("invoice", "Invoice created", invoice_id=saved.id,
                         invoice_number=saved.invoice_number, total=str(saved.total))
        return saved

    async def update_invoice(self, invoice: Invoice) -> Invoice:
        """Save edits to an existing invoice.

        The invoice number is fixed once set. A status change is allowed
        only along the state machine, with the same checks as mark_sent and
        mark_paid.
        """
        existing = self.get_invoice(invoice.id)
        if existing.invoice_number and invoice.invoice_number != existing.invoice_number:
            raise ValidationError.single("invoiceNumber", "cannot be changed once set")
        self._check_invoice_fields(invoice, exclude_id=invoice.id)

        if invoice.status != existing.status:
            pending = replace(invoice, status=existing.status)
            invoice = self._transition(pending, invoice.status, invoice.check_number,
                                       invoice.date_paid)

        invoice = await self._with_payment_link(invoice)
        saved = await self._save(invoice)
        self.events.info("invoice", "Invoice updated", invoice_id=saved.id,
                         invoice_number=saved.invoice_number)
        return saved

    async def delete_invoice(self, invoice_id: str):
        invoice = self.get_invoice(invoice_id)
        await self.invoice_store.delete(invoice_id)
        self.invoice_store.discard_local(invoice_id)
        self.events.info("invoice", "Invoice deleted", invoice_id=invoice_id,
                         invoice_number=invoice.invoice_number)

    async def delete_invoices(self, invoice_ids: list[str]) -> list[str]:
        for invoice_id in invoice_ids:
            self.get_invoice(invoice_id)
        try:
            deleted = await self.invoice_store.bulk_delete(invoice_ids)
        except BulkWriteError as e:
            for invoice_id in e.saved:
                self.invoice_store.discard_local(invoice_id)
            raise
        for invoice_id in deleted:
            self.invoice_store.discard_local(invoice_id)
        self.events.info("invoice", f"{len(deleted)} invoices deleted")
        return deleted

    # -------------------------------------------------------------------
    # Line items
    # -------------------------------------------------------------------

    async def add_item(self, invoice_id: str, description: str = "",
                       quantity=Decimal("1"), rate=ZERO) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        item = InvoiceItem(
            description=str(description or ""),
            quantity=to_decimal(quantity, "quantity"),
            rate=to_decimal(rate, "rate"),
        )
        return await self._save(invoice.with_items((*invoice.items, item)))

    async def update_item(self, invoice_id: str, item_id: str, field: str, value) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.find_item(item_id) is None:
            raise NotFoundError("Line item", item_id)
        items = [
            recompute_item(item, field, value) if item.id == item_id else item
            for item in invoice.items
        ]
        return await self._save(invoice.with_items(items))

    async def remove_item(self, invoice_id: str, item_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice.find_item(item_id) is None:
            raise NotFoundError("Line item", item_id)
        return await self._save(invoice.with_items(i for i in invoice.items if i.id != item_id))

    # -------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------

    async def mark_sent(self, invoice_id: str) -> Invoice:
        invoice = status_machine.mark_sent(self.get_invoice(invoice_id))
        saved = await self._save(invoice)
        self.events.info("invoice", "Invoice marked sent", invoice_id=saved.id,
                         invoice_number=saved.invoice_number)
        return saved

    async def mark_paid(self, invoice_id: str, check_number: str,
                        date_paid: str | None = None) -> Invoice:
        invoice = status_machine.mark_paid(self.get_invoice(invoice_id), check_number,
                                           date_paid, today=self._today())
        saved = await self._save(invoice)
        self.events.info("invoice", "Invoice marked paid", invoice_id=saved.id,
                         invoice_number=saved.invoice_number, check_number=saved.check_number)
        return saved

    async def mark_paid_bulk(self, invoice_ids: list[str], check_number: str,
                             date_paid: str | None = None) -> list[Invoice]:
        """Mark several invoices paid with one check.

        Every transition is checked before anything is written, so a bad id
        or an already-paid invoice stops the whole batch.
        """
        today = self._today()
        paid = [
            status_machine.mark_paid(self.get_invoice(invoice_id), check_number, date_paid, today=today)
            for invoice_id in invoice_ids
        ]
        saved: list[Invoice] = []
        failures: list[tuple[Invoice, SyncError]] = []
        for invoice in paid:
            try:
                saved.append(await self._save(invoice))
            except SyncError as e:
                failures.append((invoice, e))
        self.events.info("invoice", f"{len(saved)} invoices marked paid",
                         check_number=(check_number or "").strip())
        if failures:
            raise BulkWriteError(
                f"{len(failures)} of {len(paid)} invoices could not be marked paid: {failures[0][1]}",
                saved=saved,
                failures=failures,
            )
        return saved

    async def set_check_number(self, invoice_id: str, check_number: str | None) -> Invoice:
        invoice = status_machine.set_check_number(self.get_invoice(invoice_id), check_number)
        return await self._save(invoice)

    # -------------------------------------------------------------------
    # Rendering & sending
    # -------------------------------------------------------------------

    def render(self, invoice_id: str) -> DocumentArtifact:
        return render_invoice_document(self.get_invoice(invoice_id), self.sender)

    async def send_invoice(
        self,
        invoice_id: str,
        recipient: str | None = None,
        subject: str | None = None,
        body_text: str | None = None,
        mark_sent: bool = True,
    ) -> SendResult:
        """Render, email, then (for drafts) mark sent.

        Raises:
            ValidationError: the draft isn't ready to send, or bad recipient.
            DispatchError:   the email failed. Nothing about the invoice changed.
            SyncError:       the email went out but the status save failed
                             (``email_sent`` is True).
        """
        invoice = self.get_invoice(invoice_id)
        flip_status = mark_sent and invoice.status == InvoiceStatus.DRAFT
        if flip_status:
            errors = status_machine.validate_for_send(invoice)
            if errors:
                raise ValidationError(errors)
        if self.dispatcher is None:
            raise DispatchError("No email transport is configured", recipient=recipient or "")

        recipient = recipient or invoice.client_email
        artifact = render_invoice_document(invoice, self.sender)
        content = build_invoice_email(invoice, self.sender.name)
        text = body_text if body_text is not None else content.text
        html_body = content.html if body_text is None else render_html_body(text, invoice.payment_link)
        attachment = attachment_from_payload(f"Invoice_{artifact.filename}", artifact.to_data_uri(),
                                             artifact.content_type)

        try:
            receipt = await self.dispatcher.send_invoice_email(
                recipient, subject or content.subject, text, html_body, attachment)
        except DispatchError as e:
            self.events.error("email", "Invoice email failed", invoice_id=invoice.id,
                              invoice_number=invoice.invoice_number, error=str(e))
            raise
        self.events.info("email", "Invoice emailed", invoice_id=invoice.id,
                         invoice_number=invoice.invoice_number, recipient=receipt.recipient)

        if not flip_status:
            return SendResult(receipt=receipt, invoice=invoice)

        try:
            saved = await self._save(status_machine.mark_sent(invoice))
        except SyncError as e:
            self.events.error("sync", "Invoice emailed but status not saved",
                              invoice_id=invoice.id, invoice_number=invoice.invoice_number)
            raise SyncError(
                f"Invoice {invoice.invoice_number} was emailed to {receipt.recipient} "
                f"but could not be marked sent: {e}",
                status_code=e.status_code,
                retryable=e.retryable,
                email_sent=True,
            ) from e
        return SendResult(receipt=receipt, invoice=saved)

    # -------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------

    async def create_client(self, client: Client) -> Client:
        saved = await self.client_store.add(client.validate())
        self.client_store.apply_local(saved)
        self.events.info("client", "Builder added", client_id=saved.id,
                         company_name=saved.company_name)
        return saved

    async def update_client(self, client: Client) -> Client:
        """Save builder edits. Existing invoices keep their snapshot."""
        self.get_client(client.id)
        saved = await self.client_store.update(client.validate())
        self.client_store.apply_local(saved)
        self.events.info("client", "Builder updated", client_id=saved.id)
        return saved

    async def delete_client(self, client_id: str):
        self.get_client(client_id)
        await self.client_store.delete(client_id)
        self.client_store.discard_local(client_id)
        self.events.info("client", "Builder deleted", client_id=client_id)

    # -------------------------------------------------------------------
    # Expenses
    # -------------------------------------------------------------------

    async def create_expense(self, expense: Expense) -> Expense:
        saved = await self.expense_store.add(expense.validate())
        self.expense_store.apply_local(saved)
        self.events.info("expense", "Expense added", expense_id=saved.id,
                         expense_category=saved.category, amount=str(saved.amount))
        return saved

    async def update_expense(self, expense: Expense) -> Expense:
        self.get_expense(expense.id)
        saved = await self.expense_store.update(expense.validate())
        self.expense_store.apply_local(saved)
        self.events.info("expense", "Expense updated", expense_id=saved.id)
        return saved

    async def delete_expense(self, expense_id: str):
        self.get_expense(expense_id)
        await self.expense_store.delete(expense_id)
        self.expense_store.discard_local(expense_id)
        self.events.info("expense", "Expense deleted", expense_id=expense_id)

    async def delete_expenses(self, expense_ids: list[str]) -> list[str]:
        """Delete several expenses; the expense list's "clear all"."""
        for expense_id in expense_ids:
            self.get_expense(expense_id)
        try:
            deleted = await self.expense_store.bulk_delete(expense_ids)
        except BulkWriteError as e:
            for expense_id in e.saved:
                self.expense_store.discard_local(expense_id)
            raise
        for expense_id in deleted:
            self.expense_store.discard_local(expense_id)
        self.events.info("expense", f"{len(deleted)} expenses deleted")
        return deleted

    # -------------------------------------------------------------------
    # Import, backup, reports
    # -------------------------------------------------------------------

    async def import_csv(self, text: str) -> CsvImportResult:
        """Import invoices from CSV text. Duplicates are skipped."""
        existing = {inv.invoice_number for inv in self.invoice_store.snapshot()}
        result = parse_invoice_csv(text, existing, today=self._today())
        if not result.invoices:
            return result
        try:
            saved = await self.invoice_store.bulk_add(result.invoices)
        except BulkWriteError as e:
            for invoice in e.saved:
                self.invoice_store.apply_local(invoice)
            raise
        for invoice in saved:
            self.invoice_store.apply_local(invoice)
        result.invoices = saved
        self.events.info("invoice", f"Imported {len(saved)} invoices from CSV",
                         skipped=len(result.skipped))
        return result

    async def import_expenses_csv(self, text: str) -> ExpenseCsvResult:
        """Import expenses from CSV text."""
        result = parse_expense_csv(text, today=self._today())
        if not result.expenses:
            return result
        try:
            saved = await self.expense_store.bulk_add(result.expenses)
        except BulkWriteError as e:
            for expense in e.saved:
                self.expense_store.apply_local(expense)
            raise
        for expense in saved:
            self.expense_store.apply_local(expense)
        result.expenses = saved
        self.events.info("expense", f"Imported {len(saved)} expenses from CSV",
                         bad_rows=len(result.errors))
        return result

    def backup(self) -> dict:
        """Full JSON-serialisable snapshot of the ledger."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": BACKUP_VERSION,
            "data": {
                "invoices": [inv.to_dict() for inv in self.invoices()],
                "expenses": [exp.to_dict() for exp in self.expenses()],
                "clients": [cli.to_dict() for cli in self.clients()],
            },
        }

    def write_backup(self, directory: str | Path) -> Path:
        path = Path(directory) / f"cbs_books_backup_{self._today().isoformat()}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.backup(), indent=2), encoding="utf-8")
        logger.info("Backup written to %s", path)
        return path

    def report(
        self,
        period: ReportPeriod | str = ReportPeriod.YTD,
        year: int | None = None,
        month: int | None = None,
        quarter: int | None = None,
    ) -> ProfitAndLoss:
        return profit_and_loss(self.invoices(), self.expenses(), period,
                               year=year, month=month, quarter=quarter, today=self._today())

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def close(self):
        for store in (self.invoice_store, self.client_store, self.expense_store):
            await store.close()
        await self.context.close()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        if self.payments is not None:
            await self.payments.close()
