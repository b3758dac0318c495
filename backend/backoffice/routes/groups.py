# Overview: Flask API routes for PSA groups: lifecycle, membership and card order.

# backend/backoffice/routes/groups.py
"""
Group routes

GROUP LIFECYCLE:
    Draft -> ReadyToShip -> AtPSA -> Returned -> Closed
    Closed -> Returned (reopen, sets the correction hold)

POST  /api/admin/groups                              create
GET   /api/admin/groups?status=&q=&limit=&offset=    list
GET   /api/admin/groups/<ref>                        detail (id or code)
POST  /api/admin/groups/<ref>/status                 move members + group forward
POST  /api/admin/groups/<ref>/members                add submissions
POST  /api/admin/groups/<ref>/submissions/remove     remove submissions
PATCH /api/admin/groups/<ref>/cards/order            reorder cards
GET   /api/admin/groups/<ref>/members
GET   /api/admin/groups/<ref>/cards
POST  /api/admin/groups/<ref>/close
POST  /api/admin/groups/<ref>/reopen

Every route requires an admin session.
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..errors import BackofficeError, error_response
from ..extensions import db
from ..services import group_lifecycle, membership_service, status_service
from ..services.concurrency import commit_with_retry
from ..validation import bounded_int, optional_string, read_json_body, require_string, string_list


groups_bp = Blueprint("groups", __name__, url_prefix="/api/admin/groups")


def _submission_refs(data: dict) -> list[str]:
    for key in ("submissions", "submission_ids", "codes"):
        if key in data:
            return string_list(data.get(key), key)
    return string_list(None, "submissions")


@groups_bp.post("")
@require_admin
def create_group_route():
    try:
        data = read_json_body(request)
        group = group_lifecycle.create_group(optional_string(data, "notes"))
        commit_with_retry()
        return jsonify({"ok": True, "group": group.to_dict()}), 201

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create group")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.get("")
@require_admin
def list_groups_route():
    try:
        page = group_lifecycle.list_groups(
            status=request.args.get("status") or None,
            q=request.args.get("q") or None,
            limit=bounded_int(request.args.get("limit"), default=50, minimum=1, maximum=200),
            offset=bounded_int(request.args.get("offset"), default=0, minimum=0, maximum=1_000_000),
        )
        return jsonify({"ok": True, **page}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to list groups")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.get("/<ref>")
@require_admin
def get_group_route(ref: str):
    try:
        return jsonify({"ok": True, "group": group_lifecycle.get_group(ref)}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to load group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.post("/<ref>/status")
@require_admin
def set_group_status_route(ref: str):
    """
    Advance every member submission (and its cards), then the group.

    Body: {"status": "ready_to_ship" | "at_psa" | <submission status>}

    Members already at or past the status are left alone, so replaying the
    same request is harmless.
    """
    try:
        data = read_json_body(request)
        result = status_service.set_group_status(ref, require_string(data, "status"))
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to set status for group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.post("/<ref>/members")
@require_admin
def add_members_route(ref: str):
    """
    Body: {"submissions": ["PSA-1001", 17, ...]}

    Returns added_submissions / added_cards (0 when everything was already
    a member).
    """
    try:
        data = read_json_body(request)
        result = membership_service.add_submissions_to_group(ref, _submission_refs(data))
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to add submissions to group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.post("/<ref>/submissions/remove")
@require_admin
def remove_members_route(ref: str):
    try:
        data = read_json_body(request)
        result = membership_service.remove_submissions_from_group(ref, _submission_refs(data))
        commit_with_retry()
        return jsonify({"ok": True, **result}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to remove submissions from group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.patch("/<ref>/cards/order")
@require_admin
def reorder_cards_route(ref: str):
    """
    Body: {"order": [card_id, ...]} listing every card of the group once.
    """
    try:
        data = read_json_body(request)
        order = data.get("order", data.get("card_ids"))
        if not isinstance(order, list):
            return jsonify({
                "ok": False,
                "error": "invalid_card_order",
                "message": "order must be an array of card ids",
            }), 400

        written = membership_service.reorder_group_cards(ref, order)
        commit_with_retry()
        return jsonify({"ok": True, "updated": written}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reorder cards for group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.get("/<ref>/members")
@require_admin
def list_members_route(ref: str):
    try:
        return jsonify({"ok": True, "members": membership_service.list_group_members(ref)}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to list members of group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.get("/<ref>/cards")
@require_admin
def list_cards_route(ref: str):
    try:
        return jsonify({"ok": True, "cards": membership_service.list_group_cards(ref)}), 200

    except BackofficeError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to list cards of group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.post("/<ref>/close")
@require_admin
def close_group_route(ref: str):
    """Close once every member is delivered; otherwise 400 with the pending list."""
    try:
        group = group_lifecycle.close_group(ref)
        commit_with_retry()
        return jsonify({"ok": True, "group": group.to_dict()}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to close group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@groups_bp.post("/<ref>/reopen")
@require_admin
def reopen_group_route(ref: str):
    try:
        group = group_lifecycle.reopen_group(ref)
        commit_with_retry()
        return jsonify({"ok": True, "group": group.to_dict()}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reopen group %s", ref)
        return jsonify({"ok": False, "error": "internal_error"}), 500
