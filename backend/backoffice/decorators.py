# Overview: Admin gate decorator for the back-office API routes.

from functools import wraps
from flask import current_app, g, jsonify, request

from .services import admin_session_service


def request_token() -> str | None:
    """Session token from the admin cookie, falling back to a Bearer header."""
    token = request.cookies.get(current_app.config["ADMIN_SESSION_COOKIE"])
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def require_admin(f):
    """
    Require a valid admin session.

    Sets g.admin_user and g.admin_session. Returns 401 when the cookie (or
    Bearer token) is missing, expired, revoked, or belongs to a disabled
    admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request_token()
        if not token:
            return jsonify({"ok": False, "error": "unauthorized", "message": "Authentication required"}), 401

        context = admin_session_service.validate_session(token)
        if context is None:
            return jsonify({"ok": False, "error": "unauthorized", "message": "Invalid or expired session"}), 401

        g.admin_user = context.user
        g.admin_session = context.session
        return f(*args, **kwargs)

    return decorated_function


def require_owner(f):
    """Owner-only routes; use after @require_admin."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = getattr(g, "admin_user", None)
        if user is None:
            return jsonify({"ok": False, "error": "unauthorized", "message": "Authentication required"}), 401
        if user.role != "owner":
            return jsonify({"ok": False, "error": "forbidden", "message": "Owner role required"}), 403
        return f(*args, **kwargs)

    return decorated_function
