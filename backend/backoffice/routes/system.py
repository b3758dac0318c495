# backend/backoffice/routes/system.py
"""
System health endpoint.

Reports database reachability, the size of the lifecycle tables and
whether the payment processor is configured. Unauthenticated so load
balancers can poll it.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import AdminSession, Group, Invoice, Submission
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        details = {
            "submissions": db.session.query(Submission).count(),
            "groups": db.session.query(Group).count(),
            "invoices": db.session.query(Invoice).count(),
            "active_admin_sessions": db.session.query(AdminSession).filter_by(is_revoked=False).count(),
        }
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_processor_health() -> dict:
    # Configuration only; the processor is never called from a health check
    shopify = current_app.extensions["shopify"]
    if not shopify.configured:
        return {
            "status": "degraded",
            "warning": "SHOPIFY_STORE or SHOPIFY_ADMIN_API_ACCESS_TOKEN is not set",
        }
    return {
        "status": "healthy",
        "details": {"store": shopify.store, "api_version": shopify.api_version},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (processor not configured)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    processor_health = check_processor_health()

    all_checks = [database_health, processor_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "payment_processor": processor_health,
        },
    }, http_status
