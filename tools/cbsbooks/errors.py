"""
Error taxonomy for the CBS Books ledger core.

Every failure is raised to the immediate caller. Adapters (REST router,
terminal) decide how to present them; the core never swallows one.

    BooksError
    ├── ValidationError   missing/invalid fields, reported field-by-field
    ├── TransitionError   illegal status transition
    ├── NotFoundError     unknown invoice/client/expense id
    ├── SyncError         remote read/write failure (retry is the caller's call)
    ├── RenderError       PDF layout failed
    ├── DispatchError     email transport failure ("saved but not sent")
    └── PaymentLinkError  payment-link provider failure
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """One offending field and why it was rejected."""
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class BooksError(Exception):
    """Base class for all ledger core errors."""


class ValidationError(BooksError):
    """One or more fields are missing or invalid.

    Carries every offending field, never just the first one found.
    """

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        summary = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(f"Validation failed: {summary}")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldError(field, message)])


class TransitionError(BooksError):
    """An invoice status transition that the state machine does not allow."""

    def __init__(self, current: str, target: str, reason: str = ""):
        self.current = current
        self.target = target
        msg = f"Cannot move invoice from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotFoundError(BooksError):
    """The requested entity is not in the session's collections."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found")


class SyncError(BooksError):
    """Remote read or write failed. Cached state is left untouched.

    Attributes:
        status_code: HTTP status when the remote answered, else None.
        retryable:   Whether retrying the same call may succeed.
        email_sent:  Set by the send flow when the email went out but the
                     status save failed afterwards.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
        email_sent: bool = False,
    ):
        self.status_code = status_code
        self.retryable = retryable
        self.email_sent = email_sent
        super().__init__(message)


class RenderError(BooksError):
    """The invoice document could not be laid out."""


class DispatchError(BooksError):
    """The email transport refused or failed to deliver the message."""

    def __init__(self, message: str, recipient: str = ""):
        self.recipient = recipient
        super().__init__(message)


class PaymentLinkError(BooksError):
    """The payment-link provider did not return a usable link."""
