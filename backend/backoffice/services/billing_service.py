# Overview: Billing draft assembly; eligibility, address clustering, invoice line items and processor drafts.

"""
Billing Draft Assembler

================================================================================
PURPOSE: Turn returned submissions into one invoice per customer per address
================================================================================

ELIGIBILITY:
    status == received_from_psa
    AND not linked to an open invoice (pending / draft / sent)

    Links to paid, closed or superseded invoices do not block; a submission
    whose invoice is superseded by a split becomes billable again.

PERSISTENCE ORDER (one transaction, per address cluster):
    1. invoice row (the unsent invoice a submission is already linked to,
       else the open pending/draft invoice for the same customer email +
       address key, else a new pending one; a cluster whose submissions
       sit on different unsent invoices is split per invoice first)
    2. line items, upserted on (invoice_id, item_ref, kind)
    3. invoice <-> submission links
    4. submissions advanced to balance_due (forward-only updater)

    A storage failure after step 1 rolls the whole cluster back and is
    reported as PartialWriteRisk with the step that failed.

EXTERNAL DRAFTS:
    Created only after the local rows are committed. A failed processor call
    leaves the invoice pending; the next run finds the same invoice (its
    submissions are linked to it) and retries the draft.
================================================================================
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    ExternalServiceFailure,
    InvalidInvoiceState,
    MissingCustomer,
    NoEligibleSubmissions,
    NotFound,
    PartialWriteRisk,
)
from ..extensions import db
from ..models import Card, Group, GroupSubmission, Invoice, InvoiceItem, InvoiceSubmission, Submission
from ..time_utils import utcnow
from ..validation import ValidationError, coerce_cents
from .concurrency import commit_with_retry, lock_for_update
from .shopify_client import money_from_cents
from .status_service import advance_submissions, resolve_submission_ids


OPEN_INVOICE_STATUSES = ("pending", "draft", "sent")
UNSENT_INVOICE_STATUSES = ("pending", "draft")
BILLABLE_STATUS = "received_from_psa"

ADDRESS_FIELDS = ("name", "line1", "line2", "city", "region", "postal", "country")
ADDRESS_ALIASES = {
    "name": ("name", "contact", "full_name", "first_last", "attn"),
    "line1": ("line1", "address1", "addr1", "street"),
    "line2": ("line2", "address2", "addr2"),
    "city": ("city",),
    "region": ("region", "state", "province"),
    "postal": ("postal", "zip", "postal_code", "postcode"),
    "country": ("country",),
}
DEFAULT_COUNTRY = "US"


def normalize_address(raw) -> dict | None:
    """
    Canonical ship-to dict from whatever keys intake captured.

    Aliases (zip/postal_code/postcode, state/province, address1/street, ...)
    collapse onto name/line1/line2/city/region/postal/country. Country
    defaults to US. Returns None when nothing but the default is present.
    """
    if not isinstance(raw, dict):
        return None

    addr = {}
    for key, aliases in ADDRESS_ALIASES.items():
        value = ""
        for alias in aliases:
            candidate = raw.get(alias)
            if candidate is not None and str(candidate).strip():
                value = str(candidate).strip()
                break
        addr[key] = value

    if not any(addr[k] for k in ADDRESS_FIELDS if k != "country"):
        return None
    addr["country"] = addr["country"] or DEFAULT_COUNTRY
    return addr


def address_key(addr: dict | None) -> str:
    """Lower-cased name|line1|line2|city|region|postal|country ("" for no address)."""
    if not addr:
        return ""
    return "|".join(" ".join(str(addr.get(k) or "").split()).lower() for k in ADDRESS_FIELDS)


def _open_links(codes: list[str]) -> dict[str, list[Invoice]]:
    if not codes:
        return {}
    rows = (
        db.session.query(InvoiceSubmission.submission_code, Invoice)
        .join(Invoice, Invoice.id == InvoiceSubmission.invoice_id)
        .filter(
            InvoiceSubmission.submission_code.in_(codes),
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
        )
        .order_by(Invoice.id)
        .all()
    )
    out: dict[str, list[Invoice]] = {}
    for code, invoice in rows:
        out.setdefault(code, []).append(invoice)
    return out


def _load_submissions(customer_email=None, submission_refs=None) -> list[Submission]:
    query = db.session.query(Submission)
    if submission_refs:
        ids, _missing = resolve_submission_ids(submission_refs)
        if not ids:
            return []
        query = query.filter(Submission.id.in_(ids))
    if customer_email:
        query = query.filter(func.lower(Submission.customer_email) == customer_email.strip().lower())
    if not submission_refs and not customer_email:
        raise ValidationError("customer_email or submissions is required")
    return query.order_by(Submission.id).all()


def find_billable_submissions(customer_email=None, submission_refs=None) -> list[Submission]:
    """Returned-from-PSA submissions not tied to an open invoice."""
    subs = [s for s in _load_submissions(customer_email, submission_refs) if s.status == BILLABLE_STATUS]
    linked = _open_links([s.code for s in subs])
    return [s for s in subs if s.code not in linked]


@dataclass
class _Cluster:
    customer_email: str | None
    addr: dict | None
    key: str
    submissions: list = field(default_factory=list)


def _cluster(subs: list[Submission], address_groups=None) -> list[_Cluster]:
    by_code = {s.code.lower(): s for s in subs}
    clusters: "OrderedDict[tuple, _Cluster]" = OrderedDict()
    placed: set[int] = set()

    def _place(sub: Submission, addr: dict | None):
        key = address_key(addr)
        email = (sub.customer_email or "").strip().lower() or None
        cluster = clusters.get((email, key))
        if cluster is None:
            cluster = clusters[(email, key)] = _Cluster(email, addr, key)
        cluster.submissions.append(sub)
        placed.add(sub.id)

    for group in address_groups or []:
        addr = normalize_address(group.get("addr") if isinstance(group, dict) else None)
        for ref in (group.get("subs") or []) if isinstance(group, dict) else []:
            sub = by_code.get(str(ref).strip().lower())
            if sub is not None and sub.id not in placed:
                _place(sub, addr)

    for sub in subs:
        if sub.id not in placed:
            _place(sub, normalize_address(sub.shipping_address))

    return list(clusters.values())


def _split_staged(clusters: list[_Cluster], staged: dict[str, Invoice]) -> list[_Cluster]:
    """
    Keep every staged submission on the unsent invoice it is already linked
    to. A cluster spanning several such invoices becomes one cluster per
    invoice; its unstaged submissions join the first of them.
    """
    out: list[_Cluster] = []
    for cluster in clusters:
        parts: "OrderedDict[int, _Cluster]" = OrderedDict()
        loose = []
        for sub in cluster.submissions:
            invoice = staged.get(sub.code)
            if invoice is None:
                loose.append(sub)
                continue
            part = parts.get(invoice.id)
            if part is None:
                part = parts[invoice.id] = _Cluster(cluster.customer_email, cluster.addr, cluster.key)
            part.submissions.append(sub)

        if len(parts) <= 1:
            out.append(cluster)
            continue
        split = list(parts.values())
        split[0].submissions.extend(loose)
        out.extend(split)
    return out


def _group_code_for(submission_ids: list[int]) -> str | None:
    codes = sorted({
        code for (code,) in (
            db.session.query(Group.code)
            .join(GroupSubmission, GroupSubmission.group_id == Group.id)
            .filter(GroupSubmission.submission_id.in_(submission_ids))
            .all()
        )
    })
    if not codes:
        return None
    return codes[0] if len(codes) == 1 else "MULTI"


def _desired_items(subs: list[Submission], rate_cents: int, shipping_cents: int) -> list[dict]:
    items = []
    for sub in subs:
        cards = list(sub.card_rows)
        if not cards:
            qty = max(1, int(sub.cards or 0))
            items.append({
                "kind": "service",
                "item_ref": sub.code,
                "submission_code": sub.code,
                "title": f"{sub.code} - {sub.grading_service or 'PSA Grading'}",
                "qty": qty,
                "unit_cents": rate_cents,
            })
            continue

        for card in cards:
            label = card.card_description or f"Card {card.card_index}"
            unit = card.grading_cents if card.grading_cents is not None else rate_cents
            items.append({
                "kind": "service",
                "item_ref": str(card.id),
                "submission_code": sub.code,
                "title": f"{sub.code} - {label}",
                "qty": 1,
                "unit_cents": unit,
            })
            if (card.upcharge_cents or 0) > 0:
                items.append({
                    "kind": "upcharge",
                    "item_ref": str(card.id),
                    "submission_code": sub.code,
                    "title": f"Upcharge - {label}",
                    "qty": 1,
                    "unit_cents": card.upcharge_cents,
                })

    if shipping_cents > 0:
        items.append({
            "kind": "shipping",
            "item_ref": "shipping",
            "submission_code": None,
            "title": "Shipping (flat)",
            "qty": 1,
            "unit_cents": shipping_cents,
        })
    for item in items:
        item["amount_cents"] = item["qty"] * item["unit_cents"]
    return items


def _upsert_items(invoice: Invoice, desired: list[dict]) -> None:
    existing = {(i.item_ref, i.kind): i for i in invoice.items}
    keep = set()
    for data in desired:
        key = (data["item_ref"], data["kind"])
        keep.add(key)
        item = existing.get(key)
        if item is None:
            item = InvoiceItem(invoice_id=invoice.id, kind=data["kind"], item_ref=data["item_ref"])
            db.session.add(item)
        item.submission_code = data["submission_code"]
        item.title = data["title"]
        item.qty = data["qty"]
        item.unit_cents = data["unit_cents"]
        item.amount_cents = data["amount_cents"]

    for key, item in existing.items():
        if key not in keep:
            db.session.delete(item)
    db.session.flush()
    db.session.expire(invoice, ["items"])


def recompute_totals(invoice: Invoice) -> None:
    """Totals are always the sum of the invoice's current items."""
    items = db.session.query(InvoiceItem).filter(InvoiceItem.invoice_id == invoice.id).all()
    shipping = sum(i.amount_cents for i in items if i.kind == "shipping")
    subtotal = sum(i.amount_cents for i in items if i.kind != "shipping")
    invoice.subtotal_cents = subtotal
    invoice.shipping_cents = shipping
    invoice.total_cents = subtotal + shipping


def _apply_ship_to(invoice: Invoice, addr: dict | None) -> None:
    addr = addr or {}
    invoice.ship_to_name = addr.get("name") or None
    invoice.ship_to_line1 = addr.get("line1") or None
    invoice.ship_to_line2 = addr.get("line2") or None
    invoice.ship_to_city = addr.get("city") or None
    invoice.ship_to_region = addr.get("region") or None
    invoice.ship_to_postal = addr.get("postal") or None
    invoice.ship_to_country = addr.get("country") or None


def _reusable_invoice(cluster: _Cluster, staged: dict[str, Invoice]) -> Invoice | None:
    for sub in cluster.submissions:
        if sub.code in staged:
            return staged[sub.code]
    query = db.session.query(Invoice).filter(
        Invoice.status.in_(UNSENT_INVOICE_STATUSES),
        Invoice.address_key == cluster.key,
    )
    if cluster.customer_email:
        query = query.filter(func.lower(Invoice.customer_email) == cluster.customer_email)
    else:
        query = query.filter(Invoice.customer_email.is_(None))
    return query.order_by(Invoice.id).first()


def _stage_cluster(
    cluster: _Cluster,
    *,
    staged: dict[str, Invoice],
    rate_cents: int,
    shipping_cents: int,
    currency: str,
    parent_invoice_id: int | None,
    stale_drafts: list[str],
    reuse_open: bool = True,
) -> Invoice:
    step = "invoice"
    invoice = None
    try:
        invoice = _reusable_invoice(cluster, staged) if reuse_open else None
        if invoice is None:
            invoice = Invoice(
                customer_email=cluster.customer_email,
                status="pending",
                currency=currency,
                address_key=cluster.key,
                parent_invoice_id=parent_invoice_id,
            )
            _apply_ship_to(invoice, cluster.addr)
            db.session.add(invoice)
            db.session.flush()

        linked_codes = [link.submission_code for link in invoice.submission_links]
        new_codes = [s.code for s in cluster.submissions if s.code not in linked_codes]
        all_codes = linked_codes + new_codes
        all_subs = (
            db.session.query(Submission)
            .filter(Submission.code.in_(all_codes))
            .order_by(Submission.id)
            .all()
        )

        if new_codes and invoice.draft_id:
            # The processor draft no longer matches the line items
            stale_drafts.append(invoice.draft_id)
            invoice.draft_id = None
            invoice.invoice_url = None
            invoice.status = "pending"

        if not invoice.shopify_customer_id:
            invoice.shopify_customer_id = next(
                (s.shopify_customer_id for s in all_subs if s.shopify_customer_id), None
            )
        invoice.group_code = _group_code_for([s.id for s in all_subs])
        invoice.updated_at = utcnow()

        step = "items"
        _upsert_items(invoice, _desired_items(all_subs, rate_cents, shipping_cents))
        recompute_totals(invoice)

        step = "links"
        for code in new_codes:
            db.session.add(InvoiceSubmission(invoice_id=invoice.id, submission_code=code))
        db.session.flush()
        db.session.expire(invoice, ["submission_links"])

        step = "status"
        advance_submissions("balance_due", new_codes)
        return invoice
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Billing write failed at step %s", step)
        if step == "invoice":
            raise
        raise PartialWriteRisk(
            f"billing write interrupted at {step}; nothing was saved",
            step=step,
        ) from exc


def _result_for(invoice: Invoice, draft_error: str | None = None) -> dict:
    return {
        "invoice_id": invoice.id,
        "status": invoice.status,
        "draft_id": invoice.draft_id,
        "invoice_url": invoice.invoice_url,
        "submissions": sorted(link.submission_code for link in invoice.submission_links),
        "subtotal_cents": invoice.subtotal_cents,
        "shipping_cents": invoice.shipping_cents,
        "total_cents": invoice.total_cents,
        "address_key": invoice.address_key,
        "draft_error": draft_error,
    }


def build_invoices(
    subs: list[Submission],
    *,
    address_groups=None,
    rate_cents: int | None = None,
    create_drafts: bool = True,
    parent_invoice_id: int | None = None,
    staged: dict[str, Invoice] | None = None,
    reuse_open: bool = True,
) -> list[dict]:
    """
    Cluster submissions by address and stage one invoice per cluster, then
    (optionally) create processor drafts. Eligibility is the caller's job.

    With reuse_open=False every cluster gets a fresh invoice (used by splits,
    whose children must not merge into some other open invoice).
    """
    config = current_app.config
    rate = config["BILLING_RATE_CENTS"] if rate_cents is None else rate_cents
    shipping = config["BILLING_SHIPPING_CENTS"]
    currency = config["BILLING_CURRENCY"]

    stale_drafts: list[str] = []
    invoices: list[Invoice] = []
    staged = staged or {}
    for cluster in _split_staged(_cluster(subs, address_groups), staged):
        invoice = _stage_cluster(
            cluster,
            staged=staged,
            rate_cents=rate,
            shipping_cents=shipping,
            currency=currency,
            parent_invoice_id=parent_invoice_id,
            stale_drafts=stale_drafts,
            reuse_open=reuse_open,
        )
        if invoice not in invoices:
            invoices.append(invoice)
    commit_with_retry()

    processor = current_app.extensions["shopify"]
    for draft_id in stale_drafts:
        try:
            processor.delete_draft_order(draft_id)
        except ExternalServiceFailure as exc:
            current_app.logger.warning("Could not delete stale draft %s: %s", draft_id, exc.message)

    results = []
    for invoice in invoices:
        draft_error = None
        if create_drafts and not invoice.draft_id:
            try:
                create_draft_for_invoice(invoice.id)
            except (ExternalServiceFailure, MissingCustomer) as exc:
                current_app.logger.warning("Draft for invoice %s not created: %s", invoice.id, exc.message)
                draft_error = exc.message
        db.session.refresh(invoice)
        results.append(_result_for(invoice, draft_error))
    return results


def assemble_billing_drafts(
    customer_email: str | None = None,
    submission_refs=None,
    *,
    address_groups=None,
    rate_cents: int | None = None,
    create_drafts: bool = True,
) -> list[dict]:
    """
    Bill a customer's returned submissions, one invoice per shipping address.

    Submissions already linked to an unsent (pending/draft) invoice are
    folded back into that invoice, so re-running with the same input returns
    the same invoice ids and retries any draft that failed last time.

    Args:
        customer_email: bill every eligible submission of this customer
        submission_refs: or bill exactly these (ids or codes)
        address_groups: optional [{"addr": {...}, "subs": [codes]}] override
            of the address clustering; submissions outside the eligible set
            are ignored
        rate_cents: per-card rate; defaults to BILLING_RATE_CENTS
        create_drafts: also create processor drafts after committing

    Raises:
        NoEligibleSubmissions: nothing to bill and nothing to resume
    """
    subs = _load_submissions(customer_email, submission_refs)
    links = _open_links([s.code for s in subs])

    candidates: list[Submission] = []
    staged: dict[str, Invoice] = {}
    for sub in subs:
        open_invoices = links.get(sub.code)
        if not open_invoices:
            if sub.status == BILLABLE_STATUS:
                candidates.append(sub)
            continue
        unsent = [inv for inv in open_invoices if inv.status in UNSENT_INVOICE_STATUSES]
        if len(unsent) == len(open_invoices):
            staged[sub.code] = unsent[0]
            candidates.append(sub)

    if not candidates:
        raise NoEligibleSubmissions(
            "No submissions are returned from PSA and unbilled",
            customer_email=customer_email,
        )

    return build_invoices(
        candidates,
        address_groups=address_groups,
        rate_cents=rate_cents,
        create_drafts=create_drafts,
        staged=staged,
    )


def _processor_line_items(items: list[InvoiceItem]) -> list[dict]:
    line_items = []

    # Service lines collapse by unit price
    by_unit: "OrderedDict[int, int]" = OrderedDict()
    for item in items:
        if item.kind == "service" and item.unit_cents > 0:
            by_unit[item.unit_cents] = by_unit.get(item.unit_cents, 0) + max(1, item.qty)
    for unit, qty in by_unit.items():
        line_items.append({
            "title": "PSA Grading",
            "quantity": qty,
            "price": money_from_cents(unit),
            "properties": [{"name": "Kind", "value": "Service"}],
        })

    for item in items:
        if item.kind == "upcharge" and item.amount_cents > 0:
            line_items.append({
                "title": item.title or "PSA Upcharge",
                "quantity": 1,
                "price": money_from_cents(item.amount_cents),
                "properties": [{"name": "Kind", "value": "Upcharge"}],
            })

    for item in items:
        if item.kind == "shipping" and item.amount_cents > 0:
            line_items.append({
                "title": item.title or "Shipping (flat)",
                "quantity": 1,
                "price": money_from_cents(item.amount_cents),
                "properties": [{"name": "Kind", "value": "Shipping"}],
            })
    return line_items


def _processor_address(invoice: Invoice) -> dict | None:
    ship_to = invoice.ship_to()
    if not ship_to:
        return None
    return {
        "name": ship_to["name"],
        "address1": ship_to["line1"],
        "address2": ship_to["line2"],
        "city": ship_to["city"],
        "province": ship_to["region"],
        "zip": ship_to["postal"],
        "country": ship_to["country"] or DEFAULT_COUNTRY,
    }


def get_invoice(invoice_id, *, lock: bool = False) -> Invoice:
    try:
        iid = int(invoice_id)
    except (TypeError, ValueError):
        raise NotFound(f"invoice {invoice_id} not found", invoice=str(invoice_id))
    query = db.session.query(Invoice).filter(Invoice.id == iid)
    if lock:
        query = lock_for_update(query)
    invoice = query.first()
    if invoice is None:
        raise NotFound(f"invoice {invoice_id} not found", invoice=str(invoice_id))
    return invoice


def create_draft_for_invoice(invoice_id) -> dict:
    """
    Create (or reuse) the processor draft order for an invoice.

    Local state is committed before the processor is called; the invoice
    only becomes ``draft`` once the processor has answered.

    Raises:
        NotFound, InvalidInvoiceState, MissingCustomer, ExternalServiceFailure
    """
    invoice = get_invoice(invoice_id)
    if invoice.draft_id:
        return {
            "invoice_id": invoice.id,
            "draft_id": invoice.draft_id,
            "invoice_url": invoice.invoice_url,
            "already": True,
        }
    if invoice.status not in UNSENT_INVOICE_STATUSES:
        raise InvalidInvoiceState(
            f"invoice {invoice.id} is {invoice.status}; drafts are only created for pending invoices",
            status=invoice.status,
        )
    if not invoice.shopify_customer_id:
        raise MissingCustomer(
            f"invoice {invoice.id} has no Shopify customer id",
            invoice_id=invoice.id,
        )

    line_items = _processor_line_items(list(invoice.items))
    if not line_items:
        raise InvalidInvoiceState(f"invoice {invoice.id} has no billable items", invoice_id=invoice.id)

    codes = sorted(link.submission_code for link in invoice.submission_links)
    tags = "PSA Billing" + (f", Group:{invoice.group_code}" if invoice.group_code else "")
    note = f"PSA Invoice {invoice.id}" + (f": {', '.join(codes)}" if codes else "")
    note_attributes = [
        {"name": "psa_invoice_id", "value": str(invoice.id)},
        {"name": "psa_submission_codes", "value": "|".join(codes)},
    ]
    request = {
        "customer_id": invoice.shopify_customer_id,
        "line_items": line_items,
        "currency": invoice.currency,
        "tags": tags,
        "note": note,
        "note_attributes": note_attributes,
        "shipping_address": _processor_address(invoice),
    }
    invoice_pk = invoice.id

    # Never hold a transaction open across the processor call
    commit_with_retry()

    processor = current_app.extensions["shopify"]
    try:
        draft = processor.create_draft_order(**request)
    except ExternalServiceFailure:
        current_app.logger.warning("Draft creation failed for invoice %s", invoice_pk)
        raise

    invoice = get_invoice(invoice_pk)
    invoice.draft_id = draft.draft_id
    invoice.invoice_url = draft.invoice_url
    invoice.status = "draft"
    invoice.updated_at = utcnow()
    commit_with_retry()

    return {
        "invoice_id": invoice.id,
        "draft_id": invoice.draft_id,
        "invoice_url": invoice.invoice_url,
        "submissions": codes,
        "subtotal_cents": invoice.subtotal_cents,
        "total_cents": invoice.total_cents,
        "already": False,
    }


def save_upcharges(items) -> dict:
    """
    Set per-card upcharges.

    items: [{"card_id": ..., "upcharge_cents": ...}]; amounts are strict
    non-negative integers. Every card must exist or nothing is written.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty array")

    wanted: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("each item must be an object")
        try:
            card_id = int(raw.get("card_id"))
        except (TypeError, ValueError):
            raise ValidationError("card_id must be an integer")
        wanted[card_id] = coerce_cents(raw.get("upcharge_cents"), "upcharge_cents", default=0)

    cards = db.session.query(Card).filter(Card.id.in_(list(wanted))).all()
    found = {c.id for c in cards}
    missing = sorted(set(wanted) - found)
    if missing:
        raise NotFound(f"unknown card(s): {', '.join(map(str, missing))}", missing=missing)

    now = utcnow()
    updated = 0
    for card in cards:
        if card.upcharge_cents != wanted[card.id]:
            card.upcharge_cents = wanted[card.id]
            card.updated_at = now
            updated += 1
    db.session.flush()
    return {"updated": updated, "cards": len(cards)}


def preview_cards(submission_refs, *, rate_cents: int | None = None) -> list[dict]:
    """
    Per-card billing preview for a set of submissions, ordered by submission
    then card index. Each row shows the grading charge (the card's own price
    or the flat rate), its upcharge and their sum. Unknown refs are skipped.
    """
    ids, _missing = resolve_submission_ids(submission_refs)
    if not ids:
        return []
    rate = current_app.config["BILLING_RATE_CENTS"] if rate_cents is None else rate_cents

    rows = (
        db.session.query(Card, Submission)
        .join(Submission, Submission.id == Card.submission_id)
        .filter(Card.submission_id.in_(ids))
        .order_by(Submission.id, Card.card_index)
        .all()
    )
    out = []
    for card, sub in rows:
        grading = card.grading_cents if card.grading_cents is not None else rate
        upcharge = card.upcharge_cents or 0
        out.append({
            "card_id": card.id,
            "submission_code": sub.code,
            "card_index": card.card_index,
            "card_description": card.card_description,
            "grading_service": sub.grading_service,
            "status": card.status,
            "grading_cents": grading,
            "upcharge_cents": upcharge,
            "amount_cents": grading + upcharge,
        })
    return out


def prefill_upcharges(submission_refs, ship_to=None) -> dict:
    """
    Upcharges already saved on the unsent invoice these submissions would
    land on, so the preview screen can start from them.

    The invoice is the newest pending/draft one linked to any of the
    submissions, else the newest one for their customer email. With ship_to
    only invoices for that address qualify. Returns {"invoice_id": None,
    "items": []} when there is none.
    """
    ids, _missing = resolve_submission_ids(submission_refs)
    subs = db.session.query(Submission).filter(Submission.id.in_(ids)).all() if ids else []
    if not subs:
        return {"invoice_id": None, "items": []}

    key = address_key(normalize_address(ship_to)) if ship_to else None

    def newest(query):
        query = query.filter(Invoice.status.in_(UNSENT_INVOICE_STATUSES))
        if key is not None:
            query = query.filter(Invoice.address_key == key)
        return query.order_by(Invoice.id.desc()).first()

    invoice = newest(
        db.session.query(Invoice)
        .join(InvoiceSubmission, InvoiceSubmission.invoice_id == Invoice.id)
        .filter(InvoiceSubmission.submission_code.in_([s.code for s in subs]))
    )
    if invoice is None:
        emails = sorted({s.customer_email.strip().lower() for s in subs if s.customer_email})
        if emails:
            invoice = newest(
                db.session.query(Invoice).filter(func.lower(Invoice.customer_email) == emails[0])
            )
    if invoice is None:
        return {"invoice_id": None, "items": []}

    items = [
        {"card_id": int(item.item_ref), "upcharge_cents": item.amount_cents}
        for item in invoice.items
        if item.kind == "upcharge" and item.item_ref.isdigit()
    ]
    return {"invoice_id": invoice.id, "items": items}


def list_to_bill() -> dict:
    """
    The billing worklist: billable submissions bundled by customer and
    address, plus pending invoices still waiting on a draft or send.
    """
    subs = (
        db.session.query(Submission)
        .filter(Submission.status == BILLABLE_STATUS)
        .order_by(Submission.customer_email, Submission.id)
        .all()
    )
    linked = _open_links([s.code for s in subs])

    bundles: "OrderedDict[tuple, dict]" = OrderedDict()
    for sub in subs:
        if sub.code in linked:
            continue
        addr = normalize_address(sub.shipping_address)
        email = (sub.customer_email or "").strip().lower() or None
        key = (email, address_key(addr))
        bundle = bundles.get(key)
        if bundle is None:
            bundle = bundles[key] = {
                "customer_email": email,
                "address_key": key[1],
                "ship_to": addr,
                "submissions": [],
                "cards": 0,
            }
        bundle["submissions"].append(sub.code)
        bundle["cards"] += int(sub.cards or 0)

    pending = (
        db.session.query(Invoice)
        .filter(Invoice.status.in_(UNSENT_INVOICE_STATUSES))
        .order_by(Invoice.id)
        .all()
    )
    return {
        "bundles": list(bundles.values()),
        "pending_invoices": [inv.to_dict() for inv in pending],
    }
