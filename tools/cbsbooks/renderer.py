"""
Invoice document renderer.

Lays an Invoice out as an A4 PDF with fpdf2. The output depends only on the
invoice and the sender profile: the PDF creation date is pinned to the
invoice date, so rendering the same inputs twice yields identical bytes.
Downloads and email attachments are both taken from one DocumentArtifact.

Layout (mm, top-left origin):
    logo (optional)                          top right
    INVOICE / #number                        left, y=20
    Date / Due Date / Date Paid              right-aligned at x=140
    Bill To | Sent From                      y=40
    item table                               header band at y=75
    total pill                               after the last row
    PAY ONLINE button                        only with a payment link
"""

import base64
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from fpdf import FPDF
from PIL import Image, UnidentifiedImageError

from tools.cbsbooks.errors import RenderError
from tools.cbsbooks.models import Invoice, InvoiceStatus, is_iso_date
from tools.cbsbooks.totals import format_quantity, format_whole_currency

logger = logging.getLogger("cbs.renderer")

PDF_CONTENT_TYPE = "application/pdf"

PRIMARY_COLOR = (79, 120, 130)          # #4f7882
SURFACE_COLOR = (238, 239, 241)         # #eeeff1

ROW_BREAK_Y = 260
TOTAL_BREAK_Y = 230
BUTTON_BREAK_Y = 280
TOP_MARGIN_Y = 20
TOTAL_TOP_Y = 30
DESCRIPTION_WIDTH = 88

# Typographic characters the core fonts can't encode
_SUBSTITUTIONS = {
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "–": "-", "—": "-", "…": "...", " ": " ",
    "•": "*",
}

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SenderProfile:
    """Who the invoice comes from."""
    name: str = "Cascade Builder Services"
    address_lines: tuple[str, ...] = ()
    email: str = ""
    logo_path: str = ""

    @staticmethod
    def from_config(config) -> "SenderProfile":
        sender = config.sender
        return SenderProfile(
            name=sender.name,
            address_lines=tuple(sender.address_lines),
            email=sender.email,
            logo_path=sender.logo_path,
        )


@dataclass(frozen=True)
class DocumentArtifact:
    """A rendered invoice document."""
    data: bytes
    filename: str
    content_type: str = PDF_CONTENT_TYPE
    page_count: int = 1
    invoice_id: str = field(default="", compare=False)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.content_type};filename={self.filename};base64,{self.to_base64()}"

    def save(self, path: str | Path) -> Path:
        """Write the document to ``path``. A directory gets ``filename`` appended."""
        path = Path(path)
        if path.is_dir():
            path = path / self.filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.data)
        logger.info("Saved %s (%d bytes)", path, self.size)
        return path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def safe_text(text) -> str:
    """Make ``text`` encodable by the core fonts (latin-1)."""
    text = "" if text is None else str(text)
    for char, replacement in _SUBSTITUTIONS.items():
        text = text.replace(char, replacement)
    return text.encode("latin-1", "replace").decode("latin-1")


def document_filename(invoice_number: str) -> str:
    stem = _UNSAFE_FILENAME.sub("_", invoice_number.strip()).strip("._") or "invoice"
    return f"{stem}.pdf"


def format_display_date(value: str | None) -> str:
    """YYYY-MM-DD → MM/DD/YYYY. Anything unparseable is printed as-is."""
    if not value:
        return ""
    if not is_iso_date(value):
        return value
    year, month, day = value.split("-")
    return f"{month}/{day}/{year}"


def _creation_date(invoice: Invoice) -> datetime:
    if is_iso_date(invoice.date):
        return datetime.fromisoformat(invoice.date).replace(tzinfo=timezone.utc)
    return datetime(2000, 1, 1, tzinfo=timezone.utc)


def _text(pdf: FPDF, x: float, y: float, text: str, align: str = "L"):
    """Place ``text`` on the baseline ``y``, anchored at ``x``.

    align: L anchors the left edge, R the right edge, C the centre.
    """
    text = safe_text(text)
    width = pdf.get_string_width(text)
    if align == "R":
        x -= width
    elif align == "C":
        x -= width / 2
    pdf.text(x, y, text)


def _fit(pdf: FPDF, text: str, max_width: float) -> str:
    """Truncate ``text`` with an ellipsis so it fits ``max_width``."""
    text = safe_text(text)
    if pdf.get_string_width(text) <= max_width:
        return text
    while text and pdf.get_string_width(text + "...") > max_width:
        text = text[:-1]
    return text + "..."


def _load_logo(path: str):
    """Open the sender logo, or None if it's missing or unreadable."""
    if not path:
        return None
    try:
        with Image.open(path) as img:
            img.load()
            return img.convert("RGB")
    except (OSError, UnidentifiedImageError) as e:
        logger.warning("Sender logo %s could not be loaded, omitting it: %s", path, e)
        return None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_invoice_document(invoice: Invoice, sender: SenderProfile) -> DocumentArtifact:
    """Render ``invoice`` to a PDF.

    Raises:
        RenderError: if fpdf2 fails to lay out the document.
    """
    try:
        pdf = _build_pdf(invoice, sender)
        data = bytes(pdf.output())
        pages = pdf.pages_count
    except RenderError:
        raise
    except Exception as e:
        raise RenderError(f"Failed to render invoice {invoice.invoice_number}: {e}") from e

    logger.debug("Rendered invoice %s: %d page(s), %d bytes",
                 invoice.invoice_number, pages, len(data))
    return DocumentArtifact(
        data=data,
        filename=document_filename(invoice.invoice_number),
        page_count=pages,
        invoice_id=invoice.id,
    )


def _build_pdf(invoice: Invoice, sender: SenderProfile) -> FPDF:
    pdf = FPDF(orientation="P", unit="mm", format="A4")
    pdf.set_auto_page_break(auto=False)
    pdf.creation_date = _creation_date(invoice)
    pdf.set_title(safe_text(f"Invoice {invoice.invoice_number}"))
    pdf.set_author(safe_text(sender.name))
    pdf.add_page()

    # --- Logo ---
    logo = _load_logo(sender.logo_path)
    if logo is not None:
        aspect = logo.height / max(logo.width, 1)
        width, height = 36, 36 * aspect
        if height > 22:
            width, height = 22 / aspect, 22
        pdf.image(logo, x=196 - width, y=8, w=width, h=height)

    # --- Title ---
    pdf.set_font("Helvetica", "", 24)
    pdf.set_text_color(*PRIMARY_COLOR)
    _text(pdf, 14, 20, "INVOICE")
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(100)
    _text(pdf, 14, 26, f"#{invoice.invoice_number}")

    # --- Dates ---
    pdf.set_text_color(0)
    _text(pdf, 140, 20, f"Date: {format_display_date(invoice.date)}", align="R")
    _text(pdf, 140, 26, f"Due Date: {format_display_date(invoice.due_date)}", align="R")
    if invoice.status == InvoiceStatus.PAID and invoice.date_paid:
        _text(pdf, 140, 32, f"Date Paid: {format_display_date(invoice.date_paid)}", align="R")

    # --- Bill To ---
    pdf.set_font("Helvetica", "B", 12)
    _text(pdf, 14, 40, "Bill To:")
    pdf.set_font("Helvetica", "", 10)
    _text(pdf, 14, 46, invoice.client_name)
    if invoice.client_email:
        _text(pdf, 14, 51, invoice.client_email)

    # --- Sent From ---
    if sender.name or sender.address_lines:
        pdf.set_font("Helvetica", "B", 12)
        _text(pdf, 110, 40, "Sent From:")
        pdf.set_font("Helvetica", "", 10)
        y = 46
        for line in (sender.name, *sender.address_lines):
            if line:
                _text(pdf, 110, y, line)
                y += 5

    y = _draw_items(pdf, invoice, 75)
    _draw_total(pdf, invoice, y)
    return pdf


def _draw_items(pdf: FPDF, invoice: Invoice, y: float) -> float:
    """Header band, optional project row, one row per item. Returns next y."""
    pdf.set_fill_color(*SURFACE_COLOR)
    pdf.rect(14, y - 5, 182, 8, style="F", round_corners=True, corner_radius=4)

    pdf.set_font("Helvetica", "B", 10)
    pdf.set_text_color(*PRIMARY_COLOR)
    _text(pdf, 16, y, "Description")
    _text(pdf, 110, y, "Qty", align="C")
    _text(pdf, 135, y, "Rate", align="R")
    _text(pdf, 185, y, "Amount", align="R")
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(0)
    y += 10

    if invoice.project_details:
        pdf.set_font("Helvetica", "B", 10)
        _text(pdf, 16, y, "Project Address:")
        pdf.set_font("Helvetica", "", 10)
        _text(pdf, 48, y, _fit(pdf, invoice.project_details, 145))
        y += 8

    for item in invoice.items:
        if y > ROW_BREAK_Y:
            pdf.add_page()
            y = TOP_MARGIN_Y
        _text(pdf, 16, y, _fit(pdf, item.description, DESCRIPTION_WIDTH))
        _text(pdf, 110, y, format_quantity(item.quantity), align="C")
        _text(pdf, 135, y, format_whole_currency(item.rate), align="R")
        _text(pdf, 185, y, format_whole_currency(item.amount), align="R")
        y += 8

    return y


def _draw_total(pdf: FPDF, invoice: Invoice, y: float):
    # Total and pay button stay on the same page
    if y > TOTAL_BREAK_Y:
        pdf.add_page()
        y = TOTAL_TOP_Y
    else:
        y += 5

    pdf.set_draw_color(*SURFACE_COLOR)
    pdf.line(14, y, 196, y)
    y += 10

    pdf.set_fill_color(*SURFACE_COLOR)
    pdf.rect(125, y - 6, 70, 10, style="F", round_corners=True, corner_radius=5)
    pdf.set_font("Helvetica", "B", 12)
    pdf.set_text_color(*PRIMARY_COLOR)
    _text(pdf, 140, y, "Total")
    _text(pdf, 185, y, format_whole_currency(invoice.total), align="R")

    if not invoice.payment_link:
        return

    y += 20
    if y > BUTTON_BREAK_Y:
        pdf.add_page()
        y = TOTAL_TOP_Y
    pdf.set_fill_color(*PRIMARY_COLOR)
    pdf.rect(155, y - 7, 40, 10, style="F", round_corners=True, corner_radius=5)
    pdf.set_text_color(255, 255, 255)
    pdf.set_font("Helvetica", "B", 10)
    _text(pdf, 175, y, "PAY ONLINE", align="C")
    pdf.link(155, y - 7, 40, 10, invoice.payment_link)
    pdf.set_text_color(0)
