# Overview: Invoice send, split-by-address, bookkeeping status moves and invoice lookups.

"""
Invoice operations on top of the billing assembler.

INVOICE LIFECYCLE:
    pending -> draft -> sent -> paid -> closed
    pending/draft -> superseded (split by address)

send_invoice keeps the local invoice retry-safe: whatever the processor
does, the invoice ends either ``sent`` (success), ``draft`` when its earlier
draft is kept, or ``pending`` with no orphaned draft created by the failed
request.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, or_

from ..errors import ExternalServiceFailure, InvalidInvoiceState, MissingEmail, NoEligibleSubmissions, NotFound
from ..extensions import db
from ..models import Invoice, InvoiceSubmission, Submission
from ..time_utils import utcnow
from ..validation import ValidationError
from .billing_service import (
    OPEN_INVOICE_STATUSES,
    UNSENT_INVOICE_STATUSES,
    build_invoices,
    create_draft_for_invoice,
    get_invoice,
)
from .concurrency import commit_with_retry
from .status_service import advance_submissions


INVOICE_STATUS_RANK = {"pending": 0, "draft": 1, "sent": 2, "paid": 3, "closed": 4}
BOOKKEEPING_STATUSES = ("paid", "closed")

INVOICE_BUCKETS = {
    "awaiting": ("sent",),
    "paid": ("paid", "closed"),
    "open": OPEN_INVOICE_STATUSES,
    "pending": UNSENT_INVOICE_STATUSES,
}


def _linked_codes(invoice_id: int) -> list[str]:
    return sorted(
        code for (code,) in (
            db.session.query(InvoiceSubmission.submission_code)
            .filter(InvoiceSubmission.invoice_id == invoice_id)
            .all()
        )
    )


def _destination_email(invoice: Invoice, to_email: str | None) -> str:
    if to_email and to_email.strip():
        return to_email.strip()
    if invoice.customer_email:
        return invoice.customer_email
    codes = _linked_codes(invoice.id)
    if codes:
        email = (
            db.session.query(Submission.customer_email)
            .filter(Submission.code == codes[0])
            .scalar()
        )
        if email and email.strip():
            return email.strip()
    raise MissingEmail(
        "No destination email found; pass 'to' or set the submission's customer email",
        invoice_id=invoice.id,
    )


def send_invoice(
    invoice_id,
    *,
    to_email: str | None = None,
    subject: str | None = None,
    message: str | None = None,
) -> dict:
    """
    Email the processor invoice for a billing invoice and mark it sent.

    A missing draft is created first. If the send fails, a draft created by
    this call is deleted again and the invoice goes back to pending (an
    earlier draft is kept and the invoice stays draft); the
    failure is raised as ExternalServiceFailure(step="send_invoice").
    Re-sending an invoice that is already sent leaves its state alone.

    Returns:
        {"invoice_id", "sent_to", "external_result", "resent"}
    """
    invoice = get_invoice(invoice_id)
    resend = invoice.status == "sent"
    if invoice.status not in UNSENT_INVOICE_STATUSES and not resend:
        raise InvalidInvoiceState(
            f"invoice {invoice.id} is {invoice.status} and cannot be sent",
            status=invoice.status,
        )

    to = _destination_email(invoice, to_email)

    created_here = False
    if not invoice.draft_id:
        create_draft_for_invoice(invoice.id)
        created_here = True
        invoice = get_invoice(invoice_id)

    label = invoice.group_code or invoice.id
    subject = subject or f"PSA Balance - {label}"
    message = message or (
        "Your PSA grading balance"
        + (f" for group {invoice.group_code}" if invoice.group_code else "")
        + " is ready."
    )
    draft_id = invoice.draft_id
    invoice_pk = invoice.id
    commit_with_retry()

    processor = current_app.extensions["shopify"]
    try:
        result = processor.send_draft_invoice(draft_id, to=to, subject=subject, message=message)
    except ExternalServiceFailure as exc:
        current_app.logger.warning("Sending invoice %s failed: %s", invoice_pk, exc.message)
        invoice = get_invoice(invoice_pk)
        if created_here:
            try:
                processor.delete_draft_order(draft_id)
            except ExternalServiceFailure as cleanup_exc:
                current_app.logger.warning(
                    "Could not delete draft %s after failed send: %s", draft_id, cleanup_exc.message
                )
            invoice.draft_id = None
            invoice.invoice_url = None
        if not resend:
            # A kept draft still matches the line items
            invoice.status = "pending" if created_here else "draft"
        invoice.updated_at = utcnow()
        commit_with_retry()
        raise ExternalServiceFailure(
            exc.message,
            step="send_invoice",
            status_code=exc.status_code,
            invoice_id=invoice_pk,
        ) from exc

    invoice_url = None
    try:
        invoice_url = processor.get_draft_order(draft_id).get("invoice_url")
    except ExternalServiceFailure as exc:
        current_app.logger.warning("Could not refresh invoice_url for draft %s: %s", draft_id, exc.message)

    invoice = get_invoice(invoice_pk)
    now = utcnow()
    if invoice_url:
        invoice.invoice_url = invoice_url
    invoice.status = "sent"
    if invoice.sent_at is None or resend:
        invoice.sent_at = now
    invoice.updated_at = now
    advance_submissions("balance_due", _linked_codes(invoice.id))
    commit_with_retry()

    current_app.logger.info("Invoice %s sent to %s", invoice.id, to)
    return {
        "invoice_id": invoice.id,
        "sent_to": to,
        "external_result": result,
        "resent": resend,
    }


def split_invoice_by_address(invoice_id, address_groups=None, *, create_drafts: bool = False) -> dict:
    """
    Replace an unsent invoice with one child invoice per shipping address.

    The parent becomes ``superseded`` (its links stop counting as open) and
    the assembler re-bills the parent's submissions, clustered by
    address_groups or by each submission's own address. Children carry
    parent_invoice_id.
    """
    parent = get_invoice(invoice_id, lock=True)
    if parent.status not in UNSENT_INVOICE_STATUSES:
        raise InvalidInvoiceState(
            f"invoice {parent.id} is {parent.status}; only pending or draft invoices can be split",
            status=parent.status,
        )

    codes = _linked_codes(parent.id)
    if not codes:
        raise NoEligibleSubmissions(f"invoice {parent.id} has no submissions to split")

    # Submissions that meanwhile landed on another open invoice stay there
    elsewhere = {
        code for (code,) in (
            db.session.query(InvoiceSubmission.submission_code)
            .join(Invoice, Invoice.id == InvoiceSubmission.invoice_id)
            .filter(
                InvoiceSubmission.submission_code.in_(codes),
                InvoiceSubmission.invoice_id != parent.id,
                Invoice.status.in_(OPEN_INVOICE_STATUSES),
            )
            .all()
        )
    }
    subs = (
        db.session.query(Submission)
        .filter(Submission.code.in_([c for c in codes if c not in elsewhere]))
        .order_by(Submission.id)
        .all()
    )
    if not subs:
        raise NoEligibleSubmissions(f"invoice {parent.id} has no submissions left to split")

    parent_draft = parent.draft_id
    parent.status = "superseded"
    parent.updated_at = utcnow()
    db.session.flush()

    children = build_invoices(
        subs,
        address_groups=address_groups,
        create_drafts=create_drafts,
        parent_invoice_id=parent.id,
        reuse_open=False,
    )

    if parent_draft:
        try:
            current_app.extensions["shopify"].delete_draft_order(parent_draft)
        except ExternalServiceFailure as exc:
            current_app.logger.warning("Could not delete superseded draft %s: %s", parent_draft, exc.message)

    return {"parent_invoice_id": parent.id, "invoices": children}


def update_invoice_status(invoice_id, status) -> Invoice:
    """
    Bookkeeping moves: sent -> paid -> closed.

    Marking paid stamps paid_at and advances the linked submissions to paid.
    Requesting the current status is a no-op.
    """
    target = str(status or "").strip().lower()
    if target not in BOOKKEEPING_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(BOOKKEEPING_STATUSES)}")

    invoice = get_invoice(invoice_id, lock=True)
    if invoice.status == target:
        return invoice

    current_rank = INVOICE_STATUS_RANK.get(invoice.status)
    if current_rank is None or current_rank < INVOICE_STATUS_RANK["sent"] or INVOICE_STATUS_RANK[target] < current_rank:
        raise InvalidInvoiceState(
            f"invoice {invoice.id} cannot move from {invoice.status} to {target}",
            status=invoice.status,
        )

    now = utcnow()
    if target == "paid" or invoice.paid_at is None:
        invoice.paid_at = invoice.paid_at or now
        advance_submissions("paid", _linked_codes(invoice.id))
    invoice.status = target
    invoice.updated_at = now
    db.session.flush()
    return invoice


def find_invoice_by_submission(code) -> dict:
    """Latest invoice billing a submission code, preferring open invoices."""
    code = str(code or "").strip()
    if not code:
        raise ValidationError("submission is required")

    rows = (
        db.session.query(Invoice)
        .join(InvoiceSubmission, InvoiceSubmission.invoice_id == Invoice.id)
        .filter(func.lower(InvoiceSubmission.submission_code) == code.lower())
        .order_by(Invoice.id.desc())
        .all()
    )
    if not rows:
        raise NotFound(f"no invoice for submission {code}", submission=code)

    open_rows = [inv for inv in rows if inv.status in OPEN_INVOICE_STATUSES]
    invoice = (open_rows or rows)[0]
    return invoice.to_dict(include_items=True)


def list_invoices(bucket: str = "awaiting", q: str | None = None, limit: int = 200) -> list[dict]:
    statuses = INVOICE_BUCKETS.get((bucket or "awaiting").lower(), INVOICE_BUCKETS["awaiting"])
    query = db.session.query(Invoice).filter(Invoice.status.in_(statuses))

    if q and q.strip():
        like = f"%{q.strip().lower()}%"
        linked = (
            db.session.query(InvoiceSubmission.invoice_id)
            .filter(func.lower(InvoiceSubmission.submission_code).like(like))
        )
        query = query.filter(or_(
            func.lower(Invoice.customer_email).like(like),
            func.lower(Invoice.group_code).like(like),
            Invoice.id.in_(linked),
        ))

    rows = (
        query.order_by(func.coalesce(Invoice.updated_at, Invoice.created_at).desc(), Invoice.id.desc())
        .limit(limit)
        .all()
    )
    return [inv.to_dict() for inv in rows]
