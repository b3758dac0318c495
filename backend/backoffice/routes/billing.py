# Overview: Flask API routes for billing drafts, invoice send/split/status and the billing worklist.

# backend/backoffice/routes/billing.py
"""
Billing routes

INVOICE LIFECYCLE:
    pending -> draft -> sent -> paid -> closed
    pending/draft -> superseded (split by address)

POST /api/admin/billing/drafts                   assemble invoices (+ drafts)
POST /api/admin/billing/invoices/<id>/draft      create processor draft
POST /api/admin/billing/invoices/<id>/send       email the invoice
POST /api/admin/billing/invoices/<id>/split      one invoice per address
POST /api/admin/billing/invoices/<id>/status     paid / closed
GET  /api/admin/billing/invoices?bucket=&q=&limit=
GET  /api/admin/billing/invoices/<id>
GET  /api/admin/billing/to-bill
POST /api/admin/billing/upcharges
GET  /api/admin/billing/find-invoice?submission=
GET  /api/admin/billing/cards-preview?subs=&rate_cents=
GET  /api/admin/billing/preview/prefill?subs=&ship_to=

Processor failures come back as 502 external_service_failure with the
failing ``step``; local state is left so the same request can be retried.
"""

import json

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..errors import BackofficeError, error_response
from ..extensions import db
from ..services import billing_service, invoice_service
from ..services.concurrency import commit_with_retry
from ..validation import (
    ValidationError,
    bounded_int,
    coerce_cents,
    optional_string,
    read_json_body,
    require_string,
    string_list,
)


billing_bp = Blueprint("billing", __name__, url_prefix="/api/admin/billing")


def _address_groups(data: dict):
    groups = data.get("address_groups")
    if groups is None:
        return None
    if not isinstance(groups, list):
        raise ValidationError("address_groups must be an array")
    for entry in groups:
        if not isinstance(entry, dict) or not isinstance(entry.get("subs"), list):
            raise ValidationError('each address group must look like {"addr": {...}, "subs": [...]}')
    return groups


def _bool(data: dict, key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@billing_bp.post("/drafts")
@require_admin
def assemble_drafts_route():
    """
    Assemble billing invoices for returned submissions.

    Body:
    {
        "customer_email": "a@b.com",          // or
        "submissions": ["PSA-1001", ...],
        "address_groups": [{"addr": {...}, "subs": ["PSA-1001"]}],   // optional
        "rate_cents": 2000,                   // optional
        "create_drafts": true                 // optional
    }

    Re-running with the same input returns the same invoices.
    """
    try:
        data = read_json_body(request)
        refs = None
        if data.get("submissions") is not None:
            refs = string_list(data.get("submissions"), "submissions")

        invoices = billing_service.assemble_billing_drafts(
            optional_string(data, "customer_email", "email"),
            refs,
            address_groups=_address_groups(data),
            rate_cents=coerce_cents(data.get("rate_cents"), "rate_cents"),
            create_drafts=_bool(data, "create_drafts", True),
        )
        commit_with_retry()
        return jsonify({"ok": True, "invoices": invoices}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to assemble billing drafts")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.post("/invoices/<int:invoice_id>/draft")
@require_admin
def create_draft_route(invoice_id: int):
    try:
        result = billing_service.create_draft_for_invoice(invoice_id)
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create draft for invoice %s", invoice_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.post("/invoices/<int:invoice_id>/send")
@require_admin
def send_invoice_route(invoice_id: int):
    """
    Body (all optional): {"to": "...", "subject": "...", "message": "..."}

    On processor failure the invoice is back in pending (or draft when its
    earlier draft is kept) with no orphaned draft, and the response is 502 with step "send_invoice".
    """
    try:
        data = read_json_body(request)
        result = invoice_service.send_invoice(
            invoice_id,
            to_email=optional_string(data, "to", "to_email"),
            subject=optional_string(data, "subject"),
            message=optional_string(data, "message", "custom_message"),
        )
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to send invoice %s", invoice_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.post("/invoices/<int:invoice_id>/split")
@require_admin
def split_invoice_route(invoice_id: int):
    """
    Body (optional): {"address_groups": [...], "create_drafts": false}

    Without address_groups each submission is billed to its own address.
    """
    try:
        data = read_json_body(request)
        result = invoice_service.split_invoice_by_address(
            invoice_id,
            _address_groups(data),
            create_drafts=_bool(data, "create_drafts", False),
        )
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to split invoice %s", invoice_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.post("/invoices/<int:invoice_id>/status")
@require_admin
def invoice_status_route(invoice_id: int):
    """Body: {"status": "paid" | "closed"}"""
    try:
        data = read_json_body(request)
        invoice = invoice_service.update_invoice_status(invoice_id, require_string(data, "status"))
        commit_with_retry()
        return jsonify({"ok": True, "invoice": invoice.to_dict()}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update status of invoice %s", invoice_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/invoices")
@require_admin
def list_invoices_route():
    try:
        invoices = invoice_service.list_invoices(
            request.args.get("bucket") or "awaiting",
            q=request.args.get("q") or None,
            limit=bounded_int(request.args.get("limit"), default=200, minimum=1, maximum=500),
        )
        return jsonify({"ok": True, "invoices": invoices}), 200

    except Exception:
        current_app.logger.exception("Failed to list invoices")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/invoices/<int:invoice_id>")
@require_admin
def get_invoice_route(invoice_id: int):
    try:
        invoice = billing_service.get_invoice(invoice_id)
        return jsonify({"ok": True, "invoice": invoice.to_dict(include_items=True)}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to load invoice %s", invoice_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/to-bill")
@require_admin
def to_bill_route():
    try:
        return jsonify({"ok": True, **billing_service.list_to_bill()}), 200

    except Exception:
        current_app.logger.exception("Failed to build billing worklist")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.post("/upcharges")
@require_admin
def save_upcharges_route():
    """Body: {"items": [{"card_id": 12, "upcharge_cents": 500}, ...]}"""
    try:
        data = read_json_body(request)
        result = billing_service.save_upcharges(data.get("items"))
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to save upcharges")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/find-invoice")
@require_admin
def find_invoice_route():
    try:
        invoice = invoice_service.find_invoice_by_submission(request.args.get("submission"))
        return jsonify({"ok": True, "invoice": invoice}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to find invoice")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/cards-preview")
@require_admin
def cards_preview_route():
    """subs=PSA-191,PSA-205 -> one row per card with its computed charge."""
    try:
        rows = billing_service.preview_cards(
            string_list(request.args.get("subs"), "subs", required=False),
            rate_cents=coerce_cents(request.args.get("rate_cents"), "rate_cents"),
        )
        return jsonify({"ok": True, "rows": rows}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to preview cards")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@billing_bp.get("/preview/prefill")
@require_admin
def preview_prefill_route():
    """subs=PSA-191,PSA-205[&ship_to={"line1": ...}] -> saved upcharges to start from."""
    try:
        ship_to = None
        raw = request.args.get("ship_to")
        if raw:
            try:
                ship_to = json.loads(raw)
            except ValueError:
                raise ValidationError("ship_to must be a JSON object")
            if not isinstance(ship_to, dict):
                raise ValidationError("ship_to must be a JSON object")

        result = billing_service.prefill_upcharges(
            string_list(request.args.get("subs"), "subs", required=False),
            ship_to,
        )
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to prefill billing preview")
        return jsonify({"ok": False, "error": "internal_error"}), 500
