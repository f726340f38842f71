"""
Invoice email dispatch.

Sends a rendered invoice as a PDF attachment through one of two transports:

  http  POST {to, subject, text, html, attachment: {filename, data}} to the
        send-email endpoint (the hosted function owns the SMTP credentials)
  smtp  Talk to an SMTP server directly with smtplib

Dispatch never looks at or changes invoice status. A caller that wants
"sent means emailed" sequences the two itself (see InvoiceService).
"""

import asyncio
import base64
import binascii
import html
import logging
import re
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Protocol

import httpx

from tools.cbsbooks.errors import DispatchError, FieldError, ValidationError
from tools.cbsbooks.models import Invoice, is_valid_email

logger = logging.getLogger("cbs.dispatch")

_DATA_URI_PREFIX = re.compile(r"^data:[^,]*?;base64,", re.IGNORECASE)

BUTTON_COLOR = "#4f7882"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Attachment:
    """One file attached to an outgoing email. ``data`` is raw base64."""
    filename: str
    data: str
    content_type: str = "application/pdf"

    def to_dict(self) -> dict:
        return {"filename": self.filename, "data": self.data}


@dataclass(frozen=True)
class DeliveryReceipt:
    """What the transport reported back after accepting a message."""
    recipient: str
    subject: str
    transport: str
    message_id: str = ""
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "recipient": self.recipient,
            "subject": self.subject,
            "transport": self.transport,
            "message_id": self.message_id,
            "sent_at": self.sent_at,
        }


@dataclass(frozen=True)
class EmailContent:
    subject: str
    text: str
    html: str


def strip_data_uri(payload: str) -> str:
    """Drop a ``data:...;base64,`` wrapper, leaving the bare base64 payload."""
    return _DATA_URI_PREFIX.sub("", payload.strip(), count=1)


def attachment_from_payload(filename: str, payload: str | bytes,
                            content_type: str = "application/pdf") -> Attachment:
    """Build an Attachment from raw bytes, bare base64 or a data URI."""
    if isinstance(payload, (bytes, bytearray)):
        data = base64.b64encode(bytes(payload)).decode("ascii")
    else:
        data = strip_data_uri(payload)
    return Attachment(filename=filename or "invoice.pdf", data=data, content_type=content_type)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class EmailTransport(Protocol):
    name: str

    async def send(self, recipient: str, content: EmailContent,
                   attachment: Attachment | None) -> DeliveryReceipt: ...


class HttpEmailTransport:
    """POSTs the message to a send-email endpoint."""

    name = "http"

    def __init__(self, endpoint: str, timeout: float = 30.0,
                 client: httpx.AsyncClient | None = None):
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def send(self, recipient: str, content: EmailContent,
                   attachment: Attachment | None) -> DeliveryReceipt:
        payload = {
            "to": recipient,
            "subject": content.subject,
            "text": content.text,
            "html": content.html,
        }
        if attachment is not None:
            payload["attachment"] = attachment.to_dict()

        try:
            resp = await self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            raise DispatchError(f"Email endpoint unreachable: {type(e).__name__}: {e}",
                                recipient=recipient) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not resp.is_success:
            detail = body.get("error") if isinstance(body, dict) else ""
            raise DispatchError(
                f"Email endpoint returned HTTP {resp.status_code}: {detail or resp.text[:200]}",
                recipient=recipient,
            )

        message_id = str(body.get("messageId", "")) if isinstance(body, dict) else ""
        return DeliveryReceipt(recipient=recipient, subject=content.subject,
                               transport=self.name, message_id=message_id)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


class SmtpEmailTransport:
    """Sends through an SMTP server. smtplib blocks, so it runs in a worker thread."""

    name = "smtp"

    def __init__(self, host: str, port: int = 587, user: str = "", password: str = "",
                 use_tls: bool = True, from_name: str = "", from_address: str = ""):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_name = from_name
        self.from_address = from_address or user

    def build_message(self, recipient: str, content: EmailContent,
                      attachment: Attachment | None) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = content.subject
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = recipient
        msg["Message-ID"] = make_msgid()

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(content.text, "plain"))
        if content.html:
            body.attach(MIMEText(content.html, "html"))
        msg.attach(body)

        if attachment is not None:
            try:
                raw = base64.b64decode(attachment.data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise DispatchError(f"Attachment {attachment.filename} is not valid base64",
                                    recipient=recipient) from e
            subtype = attachment.content_type.split("/", 1)[-1]
            part = MIMEApplication(raw, _subtype=subtype)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(part)
        return msg

    def _send_blocking(self, recipient: str, msg: MIMEMultipart):
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.sendmail(self.from_address, [recipient], msg.as_string())

    async def send(self, recipient: str, content: EmailContent,
                   attachment: Attachment | None) -> DeliveryReceipt:
        if not self.host:
            raise DispatchError("SMTP host is not configured", recipient=recipient)
        msg = self.build_message(recipient, content, attachment)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_blocking, recipient, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchError(f"SMTP delivery failed: {e}", recipient=recipient) from e
        return DeliveryReceipt(recipient=recipient, subject=content.subject,
                               transport=self.name, message_id=msg["Message-ID"])

    async def close(self):
        pass


def transport_from_config(config) -> EmailTransport:
    """Build the transport selected by ``email.transport`` in settings.

    BooksConfig only lets http or smtp through; anything else was already
    replaced by http when settings were read.
    """
    kind = str(config.email.transport).lower()
    if kind == "smtp":
        smtp = config.smtp
        return SmtpEmailTransport(
            host=smtp.host, port=smtp.port, user=smtp.user, password=smtp.password,
            use_tls=smtp.use_tls, from_name=smtp.from_name,
            from_address=config.sender.email or smtp.user,
        )
    return HttpEmailTransport(config.email.endpoint, timeout=config.email.timeout)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class EmailDispatcher:
    """Validates and hands invoice emails to a transport."""

    def __init__(self, transport: EmailTransport):
        self.transport = transport

    async def send_invoice_email(
        self,
        recipient: str,
        subject: str,
        body_text: str,
        body_html: str,
        attachment: Attachment | None,
    ) -> DeliveryReceipt:
        """Send one invoice email.

        Raises:
            ValidationError: recipient is not a valid address.
            DispatchError:   the transport failed.
        """
        recipient = (recipient or "").strip()
        errors = []
        if not is_valid_email(recipient):
            errors.append(FieldError("recipient", f"'{recipient}' is not a valid email address"))
        if attachment is not None and not attachment.data:
            errors.append(FieldError("attachment", "attachment has no data"))
        if errors:
            raise ValidationError(errors)

        if attachment is not None:
            attachment = Attachment(
                filename=attachment.filename,
                data=strip_data_uri(attachment.data),
                content_type=attachment.content_type,
            )

        receipt = await self.transport.send(
            recipient,
            EmailContent(subject=subject, text=body_text, html=body_html),
            attachment,
        )
        logger.info("Invoice email sent to %s via %s", recipient, receipt.transport)
        return receipt

    async def close(self):
        await self.transport.close()


# ---------------------------------------------------------------------------
# Default content
# ---------------------------------------------------------------------------

def _payment_button(url: str) -> str:
    url = html.escape(url, quote=True)
    return (
        '<table width="100%" cellspacing="0" cellpadding="0" style="margin-top: 20px;">'
        '<tr><td><table cellspacing="0" cellpadding="0"><tr>'
        f'<td style="border-radius: 50px; background-color: {BUTTON_COLOR};">'
        f'<a href="{url}" target="_blank" style="padding: 12px 24px; '
        f'border: 1px solid {BUTTON_COLOR}; border-radius: 50px; font-family: sans-serif; '
        'font-size: 14px; font-weight: bold; color: #ffffff; text-decoration: none; '
        'display: inline-block;">Pay Invoice Online</a>'
        '</td></tr></table></td></tr></table>'
    )


def render_html_body(body_text: str, payment_link: str | None = None) -> str:
    """Wrap a plain-text body in minimal inline-styled HTML."""
    button = _payment_button(payment_link) if payment_link else ""
    return (
        '<div style="font-family: sans-serif; color: #191c1d; line-height: 1.5;">'
        f'<p style="white-space: pre-wrap;">{html.escape(body_text)}</p>'
        f"{button}</div>"
    )


def build_invoice_email(invoice: Invoice, sender_name: str) -> EmailContent:
    """Default subject, text and HTML for sending ``invoice``."""
    subject = f"Invoice #{invoice.invoice_number} from {sender_name}"
    text = (
        f"Hello,\n\nPlease find attached invoice #{invoice.invoice_number}.\n\n"
        f"Thank you,\n{sender_name}"
    )
    if invoice.payment_link:
        text += f"\n\nPay online: {invoice.payment_link}"
    return EmailContent(subject=subject, text=text,
                        html=render_html_body(text, invoice.payment_link))
