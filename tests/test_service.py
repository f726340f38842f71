import json
import re
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from helpers import make_client, make_expense, make_invoice
from tools.cbsbooks.errors import (
    DispatchError,
    NotFoundError,
    SyncError,
    TransitionError,
    ValidationError,
)
from tools.cbsbooks.models import InvoiceStatus
from tools.cbsbooks.payments import PaymentLinkClient
from tools.cbsbooks.sync import BulkWriteError


async def loaded(service, remote, *invoices, clients=(), expenses=()):
    remote.seed("invoices", *invoices)
    remote.seed("clients", *clients)
    remote.seed("expenses", *expenses)
    await service.load()
    return service


def payment_endpoint(answer):
    def handler(request):
        return answer
    return PaymentLinkClient("http://pay.test/link",
                             client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


# ---------------------------------------------------------------------------
# Loading & lookups
# ---------------------------------------------------------------------------

async def test_load_counts(service, remote):
    await loaded(service, remote, make_invoice(), clients=[make_client()], expenses=[make_expense()])
    assert await service.load() == {"invoices": 1, "clients": 1, "expenses": 1}
    await service.wait_idle()


async def test_lookups_raise_not_found(service, remote):
    await loaded(service, remote, make_invoice())
    assert service.find_invoice_by_number("inv-000101").id == "inv-1"
    with pytest.raises(NotFoundError):
        service.get_invoice("nope")
    with pytest.raises(NotFoundError):
        service.find_invoice_by_number("INV-999")
    with pytest.raises(NotFoundError):
        service.get_client("nope")


async def test_list_and_stats(service, remote):
    await loaded(
        service, remote,
        make_invoice(),
        make_invoice(id="inv-2", invoice_number="INV-000102", status=InvoiceStatus.SENT),
    )
    assert [i.id for i in service.list_invoices(status="sent")] == ["inv-2"]
    assert service.stats().outstanding == Decimal("420")
    assert service.stats(status="draft").outstanding == Decimal("420")


# ---------------------------------------------------------------------------
# Drafts & creation
# ---------------------------------------------------------------------------

async def test_new_draft_defaults(service):
    draft = service.new_invoice_draft(make_client(), project_details="Lot 7")
    assert re.fullmatch(r"INV-\d{6}", draft.invoice_number)
    assert draft.date == "2026-03-15"
    assert draft.due_date == "2026-04-14"
    assert draft.client_name == "Harbor Homes"
    assert draft.client_email == "billing@harborhomes.test"
    assert draft.status is InvoiceStatus.DRAFT
    assert len(draft.items) == 1
    assert draft.items[0].description == "Walk through and warranty management services"
    assert draft.total == Decimal("0")


async def test_create_invoice_adds_to_collection(service, remote):
    saved = await service.create_invoice(make_invoice())
    assert service.get_invoice("inv-1") == saved
    assert remote.records["invoices"]["inv-1"]["total"] == 420
    assert service.events.count == 1


async def test_duplicate_invoice_number_rejected(service, remote):
    await loaded(service, remote, make_invoice())
    with pytest.raises(ValidationError) as exc:
        await service.create_invoice(make_invoice(id="inv-2", invoice_number="inv-000101"))
    assert exc.value.fields == ["invoiceNumber"]
    assert remote.writes() == []


async def test_create_checks_dates_and_email(service, remote):
    bad = make_invoice(invoice_number=" ", date="03/01/2026", client_email="nope")
    with pytest.raises(ValidationError) as exc:
        await service.create_invoice(bad)
    assert exc.value.fields == ["invoiceNumber", "date", "clientEmail"]


async def test_create_attaches_payment_link(service, remote):
    service.payments = payment_endpoint(httpx.Response(200, json={"url": "https://pay.test/abc"}))
    saved = await service.create_invoice(make_invoice())
    assert saved.payment_link == "https://pay.test/abc"
    assert remote.records["invoices"]["inv-1"]["paymentLink"] == "https://pay.test/abc"


async def test_payment_link_failure_still_saves(service, remote):
    service.payments = payment_endpoint(httpx.Response(502, json={"error": "down"}))
    saved = await service.create_invoice(make_invoice())
    assert saved.payment_link is None
    assert service.events.get_recent(category="payments")[0]["severity"] == "WARN"


async def test_remote_failure_leaves_collection_unchanged(service, remote):
    remote.failures[("POST", "invoices")] = 500
    with pytest.raises(SyncError):
        await service.create_invoice(make_invoice())
    assert service.invoices() == []


async def test_create_always_starts_from_draft(service, remote):
    with pytest.raises(ValidationError) as exc:
        await service.create_invoice(make_invoice(status=InvoiceStatus.PAID))
    assert exc.value.fields == ["checkNumber"]

    with pytest.raises(ValidationError) as exc:
        await service.create_invoice(make_invoice(status=InvoiceStatus.SENT, items=()))
    assert exc.value.fields == ["items"]
    assert remote.writes() == []


async def test_create_as_paid_goes_through_mark_paid(service, remote):
    saved = await service.create_invoice(make_invoice(status=InvoiceStatus.PAID, check_number="88"))
    assert saved.status is InvoiceStatus.PAID
    assert saved.check_number == "88"
    assert saved.date_paid == "2026-03-15"


async def test_date_paid_only_on_paid_invoices(service, remote):
    with pytest.raises(ValidationError) as exc:
        await service.create_invoice(make_invoice(date_paid="2026-03-05"))
    assert exc.value.fields == ["datePaid"]

    await loaded(service, remote, make_invoice())
    with pytest.raises(ValidationError):
        await service.update_invoice(make_invoice(date_paid="2026-03-05"))
    assert service.get_invoice("inv-1").date_paid is None


# ---------------------------------------------------------------------------
# Updates & items
# ---------------------------------------------------------------------------

async def test_invoice_number_is_fixed(service, remote):
    await loaded(service, remote, make_invoice())
    with pytest.raises(ValidationError):
        await service.update_invoice(replace(make_invoice(), invoice_number="INV-777"))


async def test_update_cannot_move_status_backwards(service, remote):
    await loaded(service, remote, make_invoice(status=InvoiceStatus.PAID, check_number="1"))
    with pytest.raises(TransitionError):
        await service.update_invoice(make_invoice(status=InvoiceStatus.DRAFT))


async def test_update_status_goes_through_state_machine(service, remote):
    await loaded(service, remote, make_invoice())
    with pytest.raises(ValidationError):
        await service.update_invoice(make_invoice(status=InvoiceStatus.SENT, items=()))
    saved = await service.update_invoice(make_invoice(status=InvoiceStatus.SENT))
    assert saved.status is InvoiceStatus.SENT


async def test_item_edits_recompute_total(service, remote):
    await loaded(service, remote, make_invoice())

    invoice = await service.add_item("inv-1", "Cleanup", "2", "35")
    assert invoice.total == Decimal("490")

    invoice = await service.update_item("inv-1", "item-1", "quantity", 3)
    assert invoice.total == Decimal("640")

    invoice = await service.remove_item("inv-1", "item-2")
    assert invoice.total == Decimal("520")
    assert service.get_invoice("inv-1").total == Decimal("520")
    assert remote.records["invoices"]["inv-1"]["total"] == 520


async def test_unknown_item(service, remote):
    await loaded(service, remote, make_invoice())
    with pytest.raises(NotFoundError):
        await service.update_item("inv-1", "nope", "rate", 1)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

async def test_mark_paid(service, remote):
    await loaded(service, remote, make_invoice(status=InvoiceStatus.SENT))
    paid = await service.mark_paid("inv-1", "1042")
    assert paid.status is InvoiceStatus.PAID
    assert paid.date_paid == "2026-03-15"
    assert remote.records["invoices"]["inv-1"]["checkNumber"] == "1042"


async def test_failed_status_save_keeps_old_status(service, remote):
    await loaded(service, remote, make_invoice())
    remote.failures[("PUT", "invoices")] = 503
    with pytest.raises(SyncError):
        await service.mark_sent("inv-1")
    assert service.get_invoice("inv-1").status is InvoiceStatus.DRAFT


async def test_bulk_mark_paid_checks_everything_first(service, remote):
    await loaded(
        service, remote,
        make_invoice(status=InvoiceStatus.SENT),
        make_invoice(id="inv-2", invoice_number="INV-000102", status=InvoiceStatus.PAID),
    )
    with pytest.raises(TransitionError):
        await service.mark_paid_bulk(["inv-1", "inv-2"], "5000")
    assert remote.writes() == []


async def test_bulk_mark_paid(service, remote):
    await loaded(
        service, remote,
        make_invoice(status=InvoiceStatus.SENT),
        make_invoice(id="inv-2", invoice_number="INV-000102"),
    )
    paid = await service.mark_paid_bulk(["inv-1", "inv-2"], "5000", "2026-03-12")
    assert {p.check_number for p in paid} == {"5000"}
    assert all(i.status is InvoiceStatus.PAID for i in service.invoices())


async def test_bulk_mark_paid_partial_failure(service, remote):
    await loaded(
        service, remote,
        make_invoice(status=InvoiceStatus.SENT),
        make_invoice(id="inv-2", invoice_number="INV-000102", status=InvoiceStatus.SENT),
    )
    remote.fail_ids.add("inv-2")
    with pytest.raises(BulkWriteError) as exc:
        await service.mark_paid_bulk(["inv-1", "inv-2"], "5000")
    assert [i.id for i in exc.value.saved] == ["inv-1"]
    assert service.get_invoice("inv-2").status is InvoiceStatus.SENT


async def test_set_check_number(service, remote):
    await loaded(service, remote, make_invoice(status=InvoiceStatus.PAID, check_number="1"))
    updated = await service.set_check_number("inv-1", "1043")
    assert updated.check_number == "1043"
    assert updated.status is InvoiceStatus.PAID


async def test_delete_invoices(service, remote):
    await loaded(service, remote, make_invoice(), make_invoice(id="inv-2", invoice_number="INV-2"))
    assert await service.delete_invoices(["inv-1", "inv-2"]) == ["inv-1", "inv-2"]
    assert service.invoices() == []


async def test_delete_invoice(service, remote):
    await loaded(service, remote, make_invoice())
    await service.delete_invoice("inv-1")
    assert service.invoices() == []
    assert remote.records["invoices"] == {}


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

async def test_send_draft_emails_then_marks_sent(service, remote, transport):
    await loaded(service, remote, make_invoice())

    result = await service.send_invoice("inv-1")

    recipient, content, attachment = transport.sent[0]
    assert recipient == "billing@harborhomes.test"
    assert content.subject == "Invoice #INV-000101 from Cascade Builder Services"
    assert attachment.filename == "Invoice_INV-000101.pdf"
    assert not attachment.data.startswith("data:")
    assert result.invoice.status is InvoiceStatus.SENT
    assert service.get_invoice("inv-1").status is InvoiceStatus.SENT
    assert remote.records["invoices"]["inv-1"]["status"] == "sent"


async def test_send_uses_overrides(service, remote, transport):
    await loaded(service, remote, make_invoice())
    await service.send_invoice("inv-1", recipient="pm@harborhomes.test", subject="Re: lot 7",
                               body_text="See attached.", mark_sent=False)
    recipient, content, _ = transport.sent[0]
    assert recipient == "pm@harborhomes.test"
    assert content.subject == "Re: lot 7"
    assert content.text == "See attached."
    assert service.get_invoice("inv-1").status is InvoiceStatus.DRAFT


async def test_unready_draft_is_not_emailed(service, remote, transport):
    await loaded(service, remote, make_invoice(items=()))
    with pytest.raises(ValidationError):
        await service.send_invoice("inv-1")
    assert transport.sent == []


async def test_email_failure_leaves_invoice_draft(service, remote, transport):
    await loaded(service, remote, make_invoice())
    transport.fail_with = "relay down"

    with pytest.raises(DispatchError):
        await service.send_invoice("inv-1")

    assert service.get_invoice("inv-1").status is InvoiceStatus.DRAFT
    assert remote.writes() == []
    assert service.events.for_entity("inv-1")[-1]["severity"] == "ERROR"


async def test_emailed_but_not_saved_is_reported(service, remote, transport):
    await loaded(service, remote, make_invoice())
    remote.failures[("PUT", "invoices")] = 500

    with pytest.raises(SyncError) as exc:
        await service.send_invoice("inv-1")

    assert exc.value.email_sent
    assert len(transport.sent) == 1
    assert service.get_invoice("inv-1").status is InvoiceStatus.DRAFT


async def test_resending_sent_invoice_keeps_status(service, remote, transport):
    await loaded(service, remote, make_invoice(status=InvoiceStatus.SENT))
    result = await service.send_invoice("inv-1")
    assert result.invoice.status is InvoiceStatus.SENT
    assert remote.writes() == []
    assert len(transport.sent) == 1


async def test_send_without_dispatcher(service, remote):
    await loaded(service, remote, make_invoice())
    service.dispatcher = None
    with pytest.raises(DispatchError):
        await service.send_invoice("inv-1")


async def test_render_returns_artifact(service, remote):
    await loaded(service, remote, make_invoice())
    artifact = service.render("inv-1")
    assert artifact.filename == "INV-000101.pdf"
    assert artifact.data == service.render("inv-1").data


# ---------------------------------------------------------------------------
# Clients & expenses
# ---------------------------------------------------------------------------

async def test_client_crud(service, remote):
    client = await service.create_client(make_client())
    assert service.clients() == [client]

    updated = await service.update_client(replace(client, email="ap@harborhomes.test"))
    assert service.get_client("client-1").email == "ap@harborhomes.test"
    assert updated.address == "12 Bayview Ln Gig Harbor WA 98335"

    await service.delete_client("client-1")
    assert service.clients() == []


async def test_invalid_client_never_reaches_remote(service, remote):
    with pytest.raises(ValidationError):
        await service.create_client(make_client(email=""))
    assert remote.writes() == []


async def test_client_edit_does_not_touch_invoices(service, remote):
    await loaded(service, remote, make_invoice(), clients=[make_client()])
    await service.update_client(make_client(company_name="Harbor Homes LLC"))
    assert service.get_invoice("inv-1").client_name == "Harbor Homes"


async def test_expense_crud(service, remote):
    expense = await service.create_expense(make_expense())
    assert service.expenses() == [expense]
    added = service.events.for_entity("exp-1")[-1]
    assert added["details"]["expense_category"] == "Materials"
    await service.update_expense(replace(expense, amount=Decimal("99")))
    assert service.get_expense("exp-1").amount == Decimal("99")
    await service.delete_expense("exp-1")
    assert service.expenses() == []


async def test_import_expenses_csv(service, remote):
    await loaded(service, remote, expenses=[make_expense()])
    text = "date,payee,category,amount\n03/10/2026,Gas Co,Fuel,$45.10\n2026-03-11,Gas Co,Fuel,oops\n"
    result = await service.import_expenses_csv(text)

    assert [e.payee for e in result.expenses] == ["Gas Co"]
    assert [e.field for e in result.errors] == ["row 3"]
    assert len(remote.records["expenses"]) == 2
    assert len(service.expenses()) == 2


async def test_delete_expenses(service, remote):
    await loaded(service, remote, expenses=[make_expense(), make_expense(id="exp-2")])
    assert await service.delete_expenses(["exp-1", "exp-2"]) == ["exp-1", "exp-2"]
    assert service.expenses() == []
    assert remote.records["expenses"] == {}


async def test_delete_expenses_checks_every_id_first(service, remote):
    await loaded(service, remote, expenses=[make_expense()])
    with pytest.raises(NotFoundError):
        await service.delete_expenses(["exp-1", "nope"])
    assert remote.writes() == []


# ---------------------------------------------------------------------------
# Import, backup, reports
# ---------------------------------------------------------------------------

async def test_import_csv(service, remote):
    await loaded(service, remote, make_invoice())
    text = (
        "invoiceNumber,client,date,dueDate,total,status\n"
        "INV-000101,Harbor Homes,2026-01-05,2026-02-04,10\n"
        "INV-800,Alder Construction,2026-01-05,2026-02-04,300,paid\n"
    )
    result = await service.import_csv(text)

    assert result.skipped == ["INV-000101"]
    assert [i.invoice_number for i in result.invoices] == ["INV-800"]
    assert service.find_invoice_by_number("INV-800").total == Decimal("300")
    assert len(remote.records["invoices"]) == 2


async def test_backup(service, remote, tmp_path):
    await loaded(service, remote, make_invoice(), clients=[make_client()], expenses=[make_expense()])
    backup = service.backup()
    assert backup["version"] == "1.0"
    assert backup["data"]["invoices"][0]["invoiceNumber"] == "INV-000101"
    assert backup["data"]["clients"][0]["companyName"] == "Harbor Homes"
    assert backup["data"]["expenses"][0]["amount"] == 120.5

    path = service.write_backup(tmp_path / "backups")
    assert path.name == "cbs_books_backup_2026-03-15.json"
    assert json.loads(path.read_text())["data"] == backup["data"]


async def test_report_defaults_to_ytd(service, remote):
    await loaded(service, remote, make_invoice(), expenses=[make_expense()])
    report = service.report()
    assert report.label == "YTD 2026"
    assert report.total_income == Decimal("420")
    assert report.net_profit == Decimal("299.50")


# ---------------------------------------------------------------------------
# Cache & load state
# ---------------------------------------------------------------------------

async def test_loaded_resources_and_clear_cache(service, remote):
    assert service.loaded_resources() == []
    await loaded(service, remote, make_invoice())
    assert service.loaded_resources() == ["invoices", "clients", "expenses"]

    assert service.clear_cache() == 3
    assert service.clear_cache() == 0
    # Memory is untouched; only the disk copies go
    assert [inv.id for inv in service.invoices()] == ["inv-1"]
