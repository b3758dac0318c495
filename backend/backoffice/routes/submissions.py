# Overview: Flask API routes for submission and card status moves.

# backend/backoffice/routes/submissions.py
"""
Submission status routes

POST /api/admin/submissions/set-status       forward-only (one or many)
POST /api/admin/submissions/correct-status   sanctioned backward fix
POST /api/admin/cards/set-status             post-PSA card status
GET  /api/admin/submissions?q=&status=&page=&limit=   worklist, newest first
GET  /api/admin/submissions/<ref>            submission with its cards

Statuses never move backward through set-status; corrections are limited to
pre-PSA statuses or submissions inside a reopened group.
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..errors import BackofficeError, error_response
from ..extensions import db
from ..services import status_service
from ..services.concurrency import commit_with_retry
from ..validation import bounded_int, read_json_body, require_string, string_list


submissions_bp = Blueprint("submissions", __name__, url_prefix="/api/admin")


def _flag(data: dict, key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@submissions_bp.post("/submissions/set-status")
@require_admin
def set_submission_status_route():
    """
    Advance submissions.

    Body (single): {"submission": "PSA-1001", "status": "received", "cascade_cards"?: true}
    Body (bulk):   {"submissions": ["PSA-1001", ...], "status": "received"}

    Single requests reject backward moves; bulk requests skip rows already
    at or past the target and report counts.
    """
    try:
        data = read_json_body(request)
        status = require_string(data, "status")

        if "submissions" in data:
            refs = string_list(data.get("submissions"), "submissions")
            result = status_service.advance_submissions(status, refs, require_match=True)
            commit_with_retry()
            return jsonify({"ok": True, **result.to_dict()}), 200

        ref = require_string(data, "submission", "code", "submission_id", label="submission")
        result = status_service.set_submission_status(
            ref,
            status,
            cascade_cards=_flag(data, "cascade_cards", True),
        )
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to set submission status")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@submissions_bp.post("/submissions/correct-status")
@require_admin
def correct_submission_status_route():
    """
    Body: {"submission": "PSA-1001", "status": "received", "cascade_cards"?: false}
    """
    try:
        data = read_json_body(request)
        ref = require_string(data, "submission", "code", "submission_id", label="submission")
        result = status_service.correct_submission_status(
            ref,
            require_string(data, "status"),
            cascade_cards=_flag(data, "cascade_cards", False),
        )
        commit_with_retry()
        current_app.logger.info("Submission %s corrected to %s", result["submission"], result["status"])
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to correct submission status")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@submissions_bp.post("/cards/set-status")
@require_admin
def set_card_status_route():
    """Body: {"card_id": 12, "status": "graded"}"""
    try:
        data = read_json_body(request)
        result = status_service.set_card_status(
            require_string(data, "card_id", "id", label="card_id"),
            require_string(data, "status"),
        )
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to set card status")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@submissions_bp.get("/submissions")
@require_admin
def list_submissions_route():
    try:
        result = status_service.list_submissions(
            request.args.get("q"),
            request.args.get("status") or None,
            page=bounded_int(request.args.get("page"), default=1, minimum=1, maximum=1_000_000),
            limit=bounded_int(request.args.get("limit"), default=25, minimum=1, maximum=100),
        )
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to list submissions")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@submissions_bp.get("/submissions/<ref>")
@require_admin
def get_submission_route(ref: str):
    try:
        sub = status_service.resolve_submission(ref)
        data = sub.to_dict()
        data["card_rows"] = [card.to_dict() for card in sub.card_rows]
        return jsonify({"ok": True, "submission": data}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to load submission %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500
