"""
Totals engine: line amounts and invoice totals.

Pure functions over Decimal values. Nothing here rounds; rounding to cents
or whole dollars happens only in the format_* helpers used for display.
"""

from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from tools.cbsbooks.errors import ValidationError

ZERO = Decimal("0")

# Fields recompute_item() knows how to change
ITEM_FIELDS = ("description", "quantity", "rate")


def to_decimal(value, field: str = "value") -> Decimal:
    """Coerce a wire/form value to Decimal.

    None and empty strings become 0. Floats go through str() so 0.1 stays
    0.1 instead of its binary expansion.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError.single(field, "must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            if isinstance(value, float):
                result = Decimal(str(value))
            else:
                result = Decimal(str(value).strip().replace("$", "").replace(",", ""))
        except InvalidOperation:
            raise ValidationError.single(field, f"'{value}' is not a number")
    if not result.is_finite():
        raise ValidationError.single(field, f"'{value}' is not a finite number")
    return result


def line_amount(quantity: Decimal, rate: Decimal) -> Decimal:
    return quantity * rate


def recompute_item(item, changed_field: str, new_value):
    """Return a copy of ``item`` with one field changed.

    Changing quantity or rate changes the derived amount; changing the
    description leaves it as is.
    """
    if changed_field not in ITEM_FIELDS:
        raise ValidationError.single(changed_field, "not an editable line item field")
    if changed_field == "description":
        return replace(item, description=str(new_value or ""))
    return replace(item, **{changed_field: to_decimal(new_value, changed_field)})


def recompute_invoice_total(items: Iterable) -> Decimal:
    """Sum of item amounts. An empty list totals 0."""
    return sum((item.amount for item in items), ZERO)


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def format_currency(value: Decimal, places: int = 2) -> str:
    """$1,234.50 style string. Display only."""
    quantum = Decimal(1).scaleb(-places)
    return f"${to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP):,}"


def format_whole_currency(value: Decimal) -> str:
    """$1235 style string (no separators), as printed on the invoice PDF."""
    return f"${to_decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP)}"


def format_quantity(value: Decimal) -> str:
    """2, 1.5, 0.25: no trailing zeros, no exponent."""
    value = to_decimal(value)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), "f")
