"""
Invoice status state machine.

    draft ──mark_sent──▶ sent ──mark_paid──▶ paid
      └──────────────mark_paid──────────────▶

Transitions only move forward. Every function takes an Invoice and returns a
new one; on failure nothing is changed and the caller gets the exception.
"""

import logging
from dataclasses import replace
from datetime import date as date_cls

from tools.cbsbooks.errors import FieldError, TransitionError, ValidationError
from tools.cbsbooks.models import Invoice, InvoiceStatus, is_iso_date

logger = logging.getLogger("cbs.status")


_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.PAID}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
}


def allowed_transitions(status: InvoiceStatus) -> frozenset[InvoiceStatus]:
    """Statuses reachable from ``status`` in one step."""
    try:
        return _TRANSITIONS[InvoiceStatus(status)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown invoice status: {status!r}")


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in allowed_transitions(current)


def _require_transition(invoice: Invoice, target: InvoiceStatus):
    if not can_transition(invoice.status, target):
        if invoice.status == target:
            reason = f"invoice is already {target.value}"
        else:
            reason = "status changes only move forward"
        raise TransitionError(invoice.status.value, target.value, reason)


def validate_for_send(invoice: Invoice) -> list[FieldError]:
    """Collect every problem that would stop this invoice from being sent.

    Returns an empty list when the invoice is ready.
    """
    errors: list[FieldError] = []

    if not invoice.invoice_number.strip():
        errors.append(FieldError("invoiceNumber", "is required"))
    if not (invoice.client_name.strip() or (invoice.client_id or "").strip()):
        errors.append(FieldError("clientName", "a client is required"))
    if not is_iso_date(invoice.date):
        errors.append(FieldError("date", "must be a YYYY-MM-DD date"))
    if not is_iso_date(invoice.due_date):
        errors.append(FieldError("dueDate", "must be a YYYY-MM-DD date"))

    if not invoice.items:
        errors.append(FieldError("items", "at least one line item is required"))
    for index, item in enumerate(invoice.items):
        if not item.description.strip():
            errors.append(FieldError(f"items[{index}].description", "is required"))
        if not item.quantity.is_finite() or item.quantity <= 0:
            errors.append(FieldError(f"items[{index}].quantity", "must be greater than 0"))
        if not item.rate.is_finite() or item.rate < 0:
            errors.append(FieldError(f"items[{index}].rate", "must not be negative"))

    return errors


def mark_sent(invoice: Invoice) -> Invoice:
    """draft → sent. Only the status changes."""
    _require_transition(invoice, InvoiceStatus.SENT)
    errors = validate_for_send(invoice)
    if errors:
        raise ValidationError(errors)
    logger.debug("Invoice %s: draft -> sent", invoice.invoice_number)
    return replace(invoice, status=InvoiceStatus.SENT)


def mark_paid(
    invoice: Invoice,
    payment_reference: str | None,
    date_paid: str | None = None,
    today: date_cls | None = None,
) -> Invoice:
    """draft/sent → paid.

    Args:
        payment_reference: Check number or other payment reference. Required.
        date_paid:          YYYY-MM-DD. Defaults to ``today``.
        today:              Injected clock for tests; defaults to date.today().
    """
    _require_transition(invoice, InvoiceStatus.PAID)

    errors = []
    reference = (payment_reference or "").strip()
    if not reference:
        errors.append(FieldError("checkNumber", "a payment reference is required"))
    if date_paid is None:
        date_paid = (today or date_cls.today()).isoformat()
    elif not is_iso_date(date_paid):
        errors.append(FieldError("datePaid", "must be a YYYY-MM-DD date"))
    if errors:
        raise ValidationError(errors)

    logger.debug("Invoice %s: %s -> paid", invoice.invoice_number, invoice.status.value)
    return replace(
        invoice,
        status=InvoiceStatus.PAID,
        check_number=reference,
        date_paid=date_paid,
    )


def set_check_number(invoice: Invoice, check_number: str | None) -> Invoice:
    """Edit the payment reference in any status. Status is untouched."""
    value = (check_number or "").strip() or None
    return replace(invoice, check_number=value)
