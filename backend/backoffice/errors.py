# Overview: Domain error taxonomy shared by services and routes.

"""
Back-office domain errors.

Every error carries a stable machine-readable ``code`` (returned to the admin
UI as ``{"ok": false, "error": code}``) and the HTTP status the routes use.
Services raise these; routes translate them with ``error_response``.

Validation errors are raised before any write. Errors raised after a write
has been staged say which ``step`` failed so the caller can retry just that
step.
"""

from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    """Base class for lifecycle and billing errors."""

    code = "backoffice_error"
    http_status = 400

    def __init__(self, message: str | None = None, **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class InvalidStatus(BackofficeError):
    """Status value is not on the rank table."""
    code = "invalid_status"


class CannotMoveBackward(BackofficeError):
    """Rank regression without a sanctioned correction path."""
    code = "cannot_move_backward"


class NotBackward(BackofficeError):
    """A correction was requested that does not move the status backward."""
    code = "not_backward"


class GroupLocked(BackofficeError):
    """Membership mutation on a group that is no longer Draft/ReadyToShip."""
    code = "group_locked"
    http_status = 409


class DuplicateOpenMembership(BackofficeError):
    """Submission is already attached to another open group."""
    code = "duplicate_open_membership"
    http_status = 409


class InvalidCardOrder(BackofficeError):
    """Reorder request is not an exact permutation of the group's cards."""
    code = "invalid_card_order"


class NotAllDelivered(BackofficeError):
    """Group cannot close while members are still in flight."""
    code = "not_all_delivered"


class NotFound(BackofficeError):
    code = "not_found"
    http_status = 404


class ForbiddenAction(BackofficeError):
    """The acting admin may not do this (e.g. change their own account)."""
    code = "forbidden"
    http_status = 403


class NoEligibleSubmissions(BackofficeError):
    """Billing assembly found nothing returned-and-unbilled."""
    code = "no_eligible_submissions"


class InvalidInvoiceState(BackofficeError):
    code = "invalid_invoice_state"
    http_status = 409


class MissingCustomer(BackofficeError):
    """Invoice has no processor customer id; a draft cannot be created."""
    code = "missing_customer"


class MissingEmail(BackofficeError):
    code = "missing_email"


class ExternalServiceFailure(BackofficeError):
    """Payment-processor call failed; local state is left retry-safe."""
    code = "external_service_failure"
    http_status = 502

    def __init__(self, message: str | None = None, *, step: str | None = None, status_code: int | None = None, **details: Any):
        super().__init__(message, step=step, status_code=status_code, **details)
        self.step = step
        self.status_code = status_code


class PartialWriteRisk(BackofficeError):
    """A multi-step persistence sequence was interrupted after its first step."""
    code = "partial_write_risk"
    http_status = 500

    def __init__(self, message: str | None = None, *, step: str | None = None, **details: Any):
        super().__init__(message, step=step, **details)
        self.step = step


def error_response(exc: BackofficeError):
    """(body, status) tuple for a domain error, ready for ``jsonify``."""
    return exc.to_dict(), exc.http_status
