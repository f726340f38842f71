import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from helpers import REMOTE_URL, make_invoice
from tools.cbsbooks.errors import SyncError
from tools.cbsbooks.models import Invoice
from tools.cbsbooks.sync import BulkWriteError, LocalCache, RemoteStore, SyncContext, SyncedCollection


def collection(context, **kwargs) -> SyncedCollection:
    return SyncedCollection(context, "invoices", Invoice.from_dict, **kwargs)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def test_first_list_waits_on_remote(context, remote):
    remote.seed("invoices", make_invoice(), make_invoice(id="inv-2", invoice_number="INV-000102"))
    invoices = collection(context)
    assert not invoices.has_cache

    result = await invoices.list()

    assert [inv.id for inv in result] == ["inv-1", "inv-2"]
    assert invoices.has_cache
    assert context.has_loaded("invoices")


async def test_cached_list_returns_immediately_then_revalidates(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()

    remote.seed("invoices", make_invoice(id="inv-2", invoice_number="INV-000102"))
    cached = await invoices.list()
    assert [inv.id for inv in cached] == ["inv-1"]
    assert invoices.pending_refreshes == 1

    await invoices.wait_idle()
    assert [inv.id for inv in invoices.snapshot()] == ["inv-1", "inv-2"]


async def test_force_refresh_hits_remote(context, remote):
    invoices = collection(context)
    await invoices.list()
    remote.seed("invoices", make_invoice())

    fresh = await invoices.list(force_refresh=True)

    assert [inv.id for inv in fresh] == ["inv-1"]
    assert invoices.pending_refreshes == 0
    assert len([r for r in remote.requests if r[0] == "GET"]) == 2


async def test_restores_from_disk_when_remote_is_down(tmp_path, remote):
    remote.seed("invoices", make_invoice())
    cache = LocalCache(tmp_path / "cache")
    async with remote.client() as client:
        first = SyncContext(RemoteStore(REMOTE_URL, client=client), cache)
        await collection(first).list()

        remote.failures[("GET", "invoices")] = 503
        second = SyncContext(RemoteStore(REMOTE_URL, client=client), cache)
        invoices = collection(second)
        result = await invoices.list()
        await invoices.wait_idle()

    assert [inv.id for inv in result] == ["inv-1"]
    assert invoices.snapshot() == result
    assert invoices.last_error is not None
    assert invoices.last_error.status_code == 503


async def test_failed_first_load_raises(context, remote):
    remote.failures[("GET", "invoices")] = 500
    invoices = collection(context)
    with pytest.raises(SyncError) as exc:
        await invoices.list()
    assert exc.value.retryable
    assert not invoices.has_cache


# ---------------------------------------------------------------------------
# Stale fetches
# ---------------------------------------------------------------------------

async def test_fetch_started_before_a_write_is_discarded(context, remote):
    original = make_invoice()
    remote.seed("invoices", original)
    invoices = collection(context)
    await invoices.list()

    release = remote.hold_next_get()
    fetch = asyncio.create_task(invoices.list(force_refresh=True))
    await remote.hold_reached.wait()

    edited = replace(original, check_number="1042")
    saved = await invoices.update(edited)
    invoices.apply_local(saved)

    release.set()
    stale = await fetch

    assert stale[0].check_number is None
    assert invoices.get("inv-1").check_number == "1042"


async def test_older_fetch_landing_late_is_discarded(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)

    release = remote.hold_next_get()
    slow = asyncio.create_task(invoices.list(force_refresh=True))
    await remote.hold_reached.wait()

    remote.seed("invoices", make_invoice(id="inv-2", invoice_number="INV-000102"))
    await invoices.list(force_refresh=True)

    release.set()
    await slow

    assert [inv.id for inv in invoices.snapshot()] == ["inv-1", "inv-2"]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def test_write_does_not_touch_cache(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()

    saved = await invoices.update(replace(make_invoice(), check_number="1042"))

    assert saved.check_number == "1042"
    assert invoices.get("inv-1").check_number is None
    assert invoices.write_marker == 1


async def test_failed_write_leaves_cache_and_marker(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()
    remote.failures[("PUT", "invoices")] = 500

    with pytest.raises(SyncError) as exc:
        await invoices.update(replace(make_invoice(), check_number="1042"))

    assert exc.value.status_code == 500
    assert exc.value.retryable
    assert "PUT invoices rejected" in str(exc.value)
    assert invoices.get("inv-1").check_number is None
    assert invoices.write_marker == 0


async def test_client_errors_are_not_retryable(context, remote):
    remote.failures[("POST", "invoices")] = 400
    with pytest.raises(SyncError) as exc:
        await collection(context).add(make_invoice())
    assert exc.value.status_code == 400
    assert not exc.value.retryable


async def test_add_and_delete(context, remote):
    invoices = collection(context)
    saved = await invoices.add(make_invoice())
    assert remote.records["invoices"]["inv-1"]["invoiceNumber"] == "INV-000101"
    assert saved == make_invoice()

    await invoices.delete("inv-1")
    assert remote.records["invoices"] == {}
    assert invoices.write_marker == 2


async def test_bulk_add_keeps_successes(context, remote):
    batch = [make_invoice(id=f"inv-{n}", invoice_number=f"INV-{n:06d}") for n in range(7)]
    remote.fail_ids.add("inv-3")

    with pytest.raises(BulkWriteError) as exc:
        await collection(context).bulk_add(batch)

    assert len(exc.value.saved) == 6
    assert [entity.id for entity, _ in exc.value.failures] == ["inv-3"]
    assert exc.value.retryable
    assert len(remote.records["invoices"]) == 6


async def test_bulk_delete(context, remote):
    remote.seed("invoices", *[make_invoice(id=f"inv-{n}") for n in range(3)])
    deleted = await collection(context).bulk_delete(["inv-0", "inv-1", "inv-2"])
    assert deleted == ["inv-0", "inv-1", "inv-2"]
    assert remote.records["invoices"] == {}


# ---------------------------------------------------------------------------
# Local edits
# ---------------------------------------------------------------------------

async def test_apply_local_prepends_and_replaces(context, remote, tmp_path):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()

    invoices.apply_local(make_invoice(id="inv-2", invoice_number="INV-000102"))
    invoices.apply_local(replace(make_invoice(), check_number="9"))

    assert [inv.id for inv in invoices.snapshot()] == ["inv-2", "inv-1"]
    assert invoices.get("inv-1").check_number == "9"

    cached = json.loads((tmp_path / "cache" / "cbs_invoices.json").read_text())
    assert [r["id"] for r in cached["records"]] == ["inv-2", "inv-1"]


async def test_apply_local_without_cache_starts_one(context):
    invoices = collection(context)
    invoices.apply_local(make_invoice())
    assert invoices.has_cache
    assert invoices.snapshot() == [make_invoice()]


async def test_discard_local(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()
    invoices.discard_local("inv-1")
    assert invoices.snapshot() == []


async def test_close_cancels_pending_refresh(context, remote):
    remote.seed("invoices", make_invoice())
    invoices = collection(context)
    await invoices.list()

    remote.hold_next_get()
    await invoices.list()
    await remote.hold_reached.wait()
    await invoices.close()

    assert invoices.pending_refreshes == 0


# ---------------------------------------------------------------------------
# RemoteStore / LocalCache
# ---------------------------------------------------------------------------

async def test_html_response_is_not_retryable():
    def handler(request):
        return httpx.Response(200, text="<!doctype html><html></html>",
                              headers={"content-type": "text/html"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SyncError) as exc:
            await RemoteStore(REMOTE_URL, client=client).list("invoices")
    assert not exc.value.retryable
    assert "HTML" in str(exc.value)


async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SyncError) as exc:
            await RemoteStore(REMOTE_URL, client=client).list("invoices")
    assert exc.value.retryable
    assert exc.value.status_code is None


async def test_non_list_body_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"invoices": []})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SyncError):
            await RemoteStore(REMOTE_URL, client=client).list("invoices")


def test_cache_expires(tmp_path):
    now = [1000.0]
    cache = LocalCache(tmp_path, ttl_seconds=60, clock=lambda: now[0])
    cache.store("invoices", [{"id": "a"}])
    assert cache.load("invoices") == [{"id": "a"}]

    now[0] += 61
    assert cache.load("invoices") is None


def test_malformed_cache_is_ignored(tmp_path):
    cache = LocalCache(tmp_path)
    (tmp_path / "cbs_invoices.json").write_text("{not json")
    (tmp_path / "cbs_clients.json").write_text('{"records": "nope"}')
    assert cache.load("invoices") is None
    assert cache.load("clients") is None
    assert cache.load("expenses") is None


def test_cache_clear(tmp_path):
    cache = LocalCache(tmp_path)
    cache.store("invoices", [])
    cache.store("clients", [])
    assert cache.clear("invoices") == 1
    assert cache.clear() == 1
