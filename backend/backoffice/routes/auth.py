# Overview: Flask API routes for admin login/logout/me and owner-managed admin accounts.

# backend/backoffice/routes/auth.py
"""
Admin portal authentication routes

POST /api/admin/auth/login    -> sets the psa_admin_session cookie
POST /api/admin/auth/logout   -> revokes the session, clears the cookie
GET  /api/admin/auth/me       -> current admin
GET  /api/admin/auth/users    -> list admins (owner only)
POST /api/admin/auth/users    -> create admin (owner only)
POST /api/admin/auth/users/<id>/role        -> change role (owner only)
POST /api/admin/auth/users/<id>/deactivate  -> disable + sign out (owner only)
POST /api/admin/auth/users/<id>/reset       -> new password + sign out (owner only)

SECURITY:
- Cookie is HttpOnly, SameSite=Lax, Secure when ADMIN_SESSION_COOKIE_SECURE
- Only the SHA-256 of the session token is stored
- Self-registration does not exist; owners create staff accounts
- Owners cannot change their own role or deactivate themselves
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import request_token, require_admin, require_owner
from ..errors import BackofficeError, error_response
from ..extensions import db
from ..models import AdminUser
from ..services import admin_session_service
from ..services.admin_session_service import SESSION_ABSOLUTE_TIMEOUT, AuthError
from ..services.concurrency import commit_with_retry
from ..time_utils import to_utc_z
from ..validation import ValidationError, optional_string, read_json_body


auth_bp = Blueprint("auth", __name__, url_prefix="/api/admin/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate an admin and open a session.

    Body: {"email": "...", "password": "..."}

    The token is set as an HttpOnly cookie and also returned in the body
    for scripts that prefer an Authorization: Bearer header.
    """
    try:
        data = read_json_body(request)
        user = admin_session_service.authenticate(data.get("email"), data.get("password"))
        session, token = admin_session_service.create_session(
            user,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        commit_with_retry()

        response = jsonify({
            "ok": True,
            "user": user.to_dict(),
            "token": token,
            "expires_at": to_utc_z(session.expires_at),
        })
        response.set_cookie(
            current_app.config["ADMIN_SESSION_COOKIE"],
            token,
            max_age=int(SESSION_ABSOLUTE_TIMEOUT.total_seconds()),
            httponly=True,
            samesite="Lax",
            secure=bool(current_app.config.get("ADMIN_SESSION_COOKIE_SECURE")),
            path="/",
        )
        return response, 200

    except AuthError as e:
        db.session.rollback()
        return jsonify({"ok": False, "error": "unauthorized", "message": e.message}), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to login admin")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """Revoke the current session. Logging out twice is not an error."""
    try:
        revoked = admin_session_service.revoke_session(request_token())
        commit_with_retry()

        response = jsonify({"ok": True, "revoked": revoked})
        response.delete_cookie(current_app.config["ADMIN_SESSION_COOKIE"], path="/")
        return response, 200

    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to logout admin")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@auth_bp.get("/me")
@require_admin
def me_route():
    return jsonify({"ok": True, "user": g.admin_user.to_dict()}), 200


@auth_bp.get("/users")
@require_admin
@require_owner
def list_admins_route():
    users = db.session.query(AdminUser).order_by(AdminUser.id).all()
    return jsonify({"ok": True, "users": [u.to_dict() for u in users]}), 200


@auth_bp.post("/users")
@require_admin
@require_owner
def create_admin_route():
    """
    Create a staff (or owner) account.

    Body: {"email", "password", "name"?, "role"?: "staff"|"owner"}
    """
    try:
        data = read_json_body(request)
        user = admin_session_service.create_admin(
            data.get("email"),
            data.get("password"),
            name=data.get("name"),
            role=(data.get("role") or "staff").strip().lower(),
        )
        commit_with_retry()
        current_app.logger.info("Admin %s created by %s", user.email, g.admin_user.email)
        return jsonify({"ok": True, "user": user.to_dict()}), 201

    except ValidationError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create admin")
        return jsonify({"ok": False, "error": "internal_error"}), 500


@auth_bp.post("/users/<int:user_id>/role")
@require_admin
@require_owner
def update_role_route(user_id: int):
    """Body: {"role": "staff" | "owner"}"""
    try:
        data = read_json_body(request)
        user = admin_session_service.update_role(user_id, data.get("role"), acting=g.admin_user)
        commit_with_retry()
        current_app.logger.info("Admin %s is now %s (by %s)", user.email, user.role, g.admin_user.email)
        return jsonify({"ok": True, "user": user.to_dict()}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update role of admin %s", user_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@auth_bp.post("/users/<int:user_id>/deactivate")
@require_admin
@require_owner
def deactivate_admin_route(user_id: int):
    try:
        user, revoked = admin_session_service.deactivate_admin(user_id, acting=g.admin_user)
        commit_with_retry()
        current_app.logger.info("Admin %s deactivated by %s", user.email, g.admin_user.email)
        return jsonify({"ok": True, "user": user.to_dict(), "revoked_sessions": revoked}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to deactivate admin %s", user_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500


@auth_bp.post("/users/<int:user_id>/reset")
@require_admin
@require_owner
def reset_password_route(user_id: int):
    """
    Body (optional): {"password": "..."}

    Without a password a temporary one is generated and returned once.
    """
    try:
        data = read_json_body(request)
        user, password = admin_session_service.reset_password(
            user_id,
            optional_string(data, "password"),
            acting=g.admin_user,
        )
        commit_with_retry()
        current_app.logger.info("Password of admin %s reset by %s", user.email, g.admin_user.email)
        return jsonify({"ok": True, "user": user.to_dict(), "password": password}), 200

    except BackofficeError as e:
        db.session.rollback()
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reset password of admin %s", user_id)
        return jsonify({"ok": False, "error": "internal_error"}), 500
