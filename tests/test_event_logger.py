import json
import logging

from core.event_logger import EventLogger


def test_events_are_buffered_and_bounded():
    events = EventLogger(max_events=3)
    for n in range(5):
        events.info("invoice", f"event {n}")
    assert events.count == 3
    assert [e["message"] for e in events.get_recent()] == ["event 2", "event 3", "event 4"]


def test_get_recent_filters_by_category():
    events = EventLogger()
    events.info("invoice", "Invoice created", invoice_id="inv-1")
    events.error("email", "Invoice email failed", invoice_id="inv-1")
    events.warn("payments", "No link")

    assert [e["severity"] for e in events.get_recent(category="email")] == ["ERROR"]
    assert len(events.get_recent(count=2)) == 2


def test_for_entity():
    events = EventLogger()
    events.info("invoice", "Invoice created", invoice_id="inv-1")
    events.info("client", "Builder added", client_id="client-1")
    events.info("invoice", "Invoice created", invoice_id="inv-2")

    assert [e["details"] for e in events.for_entity("inv-1")] == [{"invoice_id": "inv-1"}]
    assert len(events.for_entity("client-1")) == 1


def test_events_forward_to_logging(caplog):
    events = EventLogger()
    with caplog.at_level(logging.INFO, logger="cbs.events"):
        events.warn("sync", "Initial ledger load failed", error="timeout")
    assert "[sync] Initial ledger load failed (error=timeout)" in caplog.text


def test_export_json(tmp_path):
    events = EventLogger()
    events.info("invoice", "Invoice created", invoice_id="inv-1")
    path = tmp_path / "audit" / "events.json"

    assert events.export_json(path) == 1
    data = json.loads(path.read_text())
    assert data["event_count"] == 1
    assert data["events"][0]["category"] == "invoice"


def test_details_may_reuse_argument_names():
    events = EventLogger()
    events.info("expense", "Expense added", expense_id="exp-1", category="Fuel", message="x")
    event = events.get_recent()[0]
    assert event["category"] == "expense"
    assert event["details"] == {"expense_id": "exp-1", "category": "Fuel", "message": "x"}
