# Overview: Admin accounts (bcrypt passwords) and hashed, expiring admin portal sessions.

"""
Admin identity gate.

Admin users log in with email + password; the portal receives an opaque
session token (cookie psa_admin_session, or a Bearer header for scripts).

SECURITY FEATURES:
- Passwords hashed with bcrypt
- Tokens: 32 random bytes, stored only as SHA-256
- 7-day absolute timeout, 12-hour idle timeout
- Revoked on logout, idle timeout, account deactivation or password reset
- Owners manage other accounts, never their own role or status
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

import bcrypt
from flask import current_app
from sqlalchemy import func

from ..errors import ForbiddenAction, NotFound
from ..extensions import db
from ..models import AdminSession, AdminUser
from ..time_utils import is_expired, utcnow
from ..validation import ValidationError


SESSION_ABSOLUTE_TIMEOUT = timedelta(days=7)
SESSION_IDLE_TIMEOUT = timedelta(hours=12)

ADMIN_ROLES = ("owner", "staff")
MIN_PASSWORD_LENGTH = 8


class AuthError(Exception):
    """Login failed; message is safe to show."""

    def __init__(self, message: str, http_status: int = 401):
        super().__init__(message)
        self.message = message
        self.http_status = http_status


@dataclass
class AdminContext:
    user: AdminUser
    session: AdminSession


def hash_password(password: str) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    rounds = int(current_app.config.get("ADMIN_BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """bcrypt check; malformed hashes simply fail."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_admin(email: str, password: str, *, name: str | None = None, role: str = "staff") -> AdminUser:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if role not in ADMIN_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ADMIN_ROLES)}")
    if db.session.query(AdminUser.id).filter(func.lower(AdminUser.email) == email).first():
        raise ValidationError(f"Admin {email} already exists")

    user = AdminUser(
        email=email,
        name=(name or "").strip() or None,
        role=role,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.session.add(user)
    db.session.flush()
    return user


def authenticate(email: str, password: str) -> AdminUser:
    """
    Check credentials.

    Raises:
        AuthError: 401 for unknown email or bad password, 403 for a disabled account
    """
    email = (email or "").strip().lower()
    if not email or not password:
        raise AuthError("Email and password are required", 400)

    user = db.session.query(AdminUser).filter(func.lower(AdminUser.email) == email).first()
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError("Invalid email or password")
    if not user.is_active:
        raise AuthError("User disabled", 403)
    return user


def create_session(
    user: AdminUser,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[AdminSession, str]:
    """Returns (session_record, plaintext_token); only the hash is stored."""
    token = generate_token()
    now = utcnow()
    session = AdminSession(
        admin_user_id=user.id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + SESSION_ABSOLUTE_TIMEOUT,
        user_agent=(user_agent or "")[:255] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    user.last_login_at = now
    db.session.add(session)
    db.session.flush()
    return session, token


def _revoke(session: AdminSession, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason


def validate_session(token: str | None) -> AdminContext | None:
    """
    Resolve a plaintext token to its admin, or None.

    Expired, idle, revoked and deactivated-user sessions all fail; idle
    and deactivated ones are revoked on the way out. Commits its own
    bookkeeping so the caller's transaction starts clean.
    """
    if not token:
        return None

    session = (
        db.session.query(AdminSession)
        .filter(AdminSession.token_hash == hash_token(token), AdminSession.is_revoked.is_(False))
        .first()
    )
    if session is None:
        return None

    now = utcnow()
    if is_expired(session.expires_at, now=now):
        return None

    if is_expired(session.last_used_at + SESSION_IDLE_TIMEOUT, now=now):
        _revoke(session, "Idle timeout")
        db.session.commit()
        return None

    user = session.admin_user
    if user is None or not user.is_active:
        _revoke(session, "User deactivated")
        db.session.commit()
        return None

    session.last_used_at = now
    db.session.commit()
    return AdminContext(user=user, session=session)


def revoke_session(token: str | None) -> bool:
    if not token:
        return False
    session = (
        db.session.query(AdminSession)
        .filter(AdminSession.token_hash == hash_token(token), AdminSession.is_revoked.is_(False))
        .first()
    )
    if session is None:
        return False
    _revoke(session, "Logout")
    db.session.flush()
    return True


def get_admin(user_id) -> AdminUser:
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise NotFound(f"admin {user_id} not found", user=str(user_id))
    user = db.session.get(AdminUser, uid)
    if user is None:
        raise NotFound(f"admin {user_id} not found", user=str(user_id))
    return user


def _other_admin(user_id, acting: AdminUser, action: str) -> AdminUser:
    user = get_admin(user_id)
    if user.id == acting.id:
        raise ForbiddenAction(f"You cannot {action} your own account", user=user.id)
    return user


def revoke_user_sessions(user: AdminUser, reason: str) -> int:
    sessions = (
        db.session.query(AdminSession)
        .filter(AdminSession.admin_user_id == user.id, AdminSession.is_revoked.is_(False))
        .all()
    )
    for session in sessions:
        _revoke(session, reason)
    db.session.flush()
    return len(sessions)


def update_role(user_id, role, *, acting: AdminUser) -> AdminUser:
    """
    Change another admin's role.

    Raises:
        ValidationError: role is not owner/staff
        ForbiddenAction: acting on yourself
        NotFound: unknown admin
    """
    role = (role or "").strip().lower()
    if role not in ADMIN_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ADMIN_ROLES)}")
    user = _other_admin(user_id, acting, "change the role of")
    user.role = role
    db.session.flush()
    return user


def deactivate_admin(user_id, *, acting: AdminUser) -> tuple[AdminUser, int]:
    """
    Soft-delete an admin: the row stays (sessions reference it), login is
    refused and every open session is revoked. Owners cannot deactivate
    themselves, so at least one active owner always remains.

    Returns (user, revoked session count).
    """
    user = _other_admin(user_id, acting, "deactivate")
    user.is_active = False
    revoked = revoke_user_sessions(user, "User deactivated")
    return user, revoked


def reset_password(user_id, new_password: str | None = None, *, acting: AdminUser) -> tuple[AdminUser, str]:
    """
    Set a new password for another admin and sign them out everywhere.

    Without new_password a random temporary one is generated. Returns
    (user, plaintext password) so the owner can hand it over once.
    """
    user = _other_admin(user_id, acting, "reset the password of")
    password = new_password or secrets.token_urlsafe(12)
    user.password_hash = hash_password(password)
    revoke_user_sessions(user, "Password reset")
    return user, password
