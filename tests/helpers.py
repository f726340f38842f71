"""Shared fakes and factories for the CBS Books tests."""

import asyncio
import json
from datetime import date
from decimal import Decimal

import httpx

from tools.cbsbooks.dispatch import DeliveryReceipt
from tools.cbsbooks.errors import DispatchError
from tools.cbsbooks.models import Client, Expense, Invoice, InvoiceItem, InvoiceStatus
from tools.cbsbooks.renderer import SenderProfile

REMOTE_URL = "http://remote.test/api"
TODAY = date(2026, 3, 15)

SENDER = SenderProfile(
    name="Cascade Builder Services",
    address_lines=("3519 Fox Ct.", "Gig Harbor, WA 98335"),
    email="office@cbs.test",
)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_invoice(**overrides) -> Invoice:
    """A sendable draft totalling $420 (2 × 150 + 1.5 × 80)."""
    fields = dict(
        id="inv-1",
        invoice_number="INV-000101",
        client_id="client-1",
        client_name="Harbor Homes",
        client_email="billing@harborhomes.test",
        project_details="12 Bayview Ln",
        date="2026-03-01",
        due_date="2026-03-31",
        items=(
            InvoiceItem(id="item-1", description="Walk through", quantity=Decimal("2"),
                        rate=Decimal("150")),
            InvoiceItem(id="item-2", description="Warranty repair", quantity=Decimal("1.5"),
                        rate=Decimal("80")),
        ),
        status=InvoiceStatus.DRAFT,
    )
    fields.update(overrides)
    return Invoice(**fields)


def make_client(**overrides) -> Client:
    fields = dict(
        id="client-1",
        company_name="Harbor Homes",
        email="billing@harborhomes.test",
        address_line1="12 Bayview Ln",
        city="Gig Harbor",
        state="WA",
        zip="98335",
    )
    fields.update(overrides)
    return Client(**fields)


def make_expense(**overrides) -> Expense:
    fields = dict(
        id="exp-1",
        date="2026-03-05",
        category="Materials",
        amount=Decimal("120.50"),
        payee="Lumber Yard",
    )
    fields.update(overrides)
    return Expense(**fields)


# ---------------------------------------------------------------------------
# Fake remote store
# ---------------------------------------------------------------------------

class FakeRemote:
    """In-memory stand-in for the remote JSON store, served through httpx.MockTransport.

    ``failures`` maps (method, resource) to an HTTP status to answer with.
    ``fail_ids`` makes writes to those entity ids answer 500.
    ``hold_next_get()`` makes the next GET capture its answer, then wait for
    the returned event before responding.
    """

    def __init__(self):
        self.records: dict[str, dict[str, dict]] = {"invoices": {}, "clients": {}, "expenses": {}}
        self.requests: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self.fail_ids: set[str] = set()
        self._holds: list[asyncio.Event] = []
        self.hold_reached = asyncio.Event()

    def seed(self, resource: str, *entities):
        for entity in entities:
            self.records[resource][entity.id] = entity.to_dict()

    def hold_next_get(self) -> asyncio.Event:
        release = asyncio.Event()
        self._holds.append(release)
        self.hold_reached = asyncio.Event()
        return release

    def writes(self) -> list[tuple[str, str]]:
        return [r for r in self.requests if r[0] != "GET"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        parts = request.url.path.strip("/").split("/")
        resource = parts[1]
        entity_id = parts[2] if len(parts) > 2 else None
        self.requests.append((method, request.url.path))

        status = self.failures.get((method, resource))
        if status is not None:
            return httpx.Response(status, json={"error": f"{method} {resource} rejected"})

        store = self.records.setdefault(resource, {})
        if method == "GET":
            body = list(store.values())
            if self._holds:
                release = self._holds.pop(0)
                self.hold_reached.set()
                await release.wait()
            return httpx.Response(200, json=body)

        if method == "DELETE":
            if entity_id in self.fail_ids:
                return httpx.Response(500, json={"error": "delete failed"})
            store.pop(entity_id, None)
            return httpx.Response(204)

        data = json.loads(request.content)
        if data.get("id") in self.fail_ids:
            return httpx.Response(500, json={"error": "write failed"})
        store[data["id"]] = data
        return httpx.Response(201 if method == "POST" else 200, json=data)


# ---------------------------------------------------------------------------
# Fake email transport
# ---------------------------------------------------------------------------

class RecordingTransport:
    """Email transport that keeps every message instead of sending it."""

    name = "recording"

    def __init__(self):
        self.sent = []
        self.fail_with: str | None = None

    async def send(self, recipient, content, attachment):
        if self.fail_with:
            raise DispatchError(self.fail_with, recipient=recipient)
        self.sent.append((recipient, content, attachment))
        return DeliveryReceipt(recipient=recipient, subject=content.subject,
                               transport=self.name, message_id=f"msg-{len(self.sent)}")

    async def close(self):
        pass


def write_settings(path, extra: str = "") -> str:
    """Write a settings.toml pointing at the fake endpoints. Returns its path."""
    cache_dir = (path / "cache").as_posix()
    text = f"""
[remote]
base_url = "{REMOTE_URL}"

[cache]
dir = "{cache_dir}"

[email]
transport = "http"
endpoint = "http://mail.test/send"

[payments]
enabled = false

[sender]
name = "Cascade Builder Services"
address_lines = ["3519 Fox Ct.", "Gig Harbor, WA 98335"]
email = "office@cbs.test"
{extra}
"""
    settings = path / "settings.toml"
    settings.write_text(text, encoding="utf-8")
    return str(settings)
