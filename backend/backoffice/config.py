# backend/backoffice/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite file in the instance folder unless DATABASE_URL points at Postgres
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///backoffice.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment processor (Shopify draft orders)
    SHOPIFY_STORE = os.environ.get("SHOPIFY_STORE", "")
    SHOPIFY_ADMIN_API_ACCESS_TOKEN = os.environ.get("SHOPIFY_ADMIN_API_ACCESS_TOKEN", "")
    SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-04")
    SHOPIFY_TIMEOUT_SECONDS = float(os.environ.get("SHOPIFY_TIMEOUT_SECONDS", "20"))
    SHOPIFY_SEND_ATTEMPTS = _int_env("SHOPIFY_SEND_ATTEMPTS", 6)
    SHOPIFY_SEND_BACKOFF_SECONDS = float(os.environ.get("SHOPIFY_SEND_BACKOFF_SECONDS", "0.5"))

    # Billing: one rate source for every call path
    BILLING_RATE_CENTS = _int_env("BILLING_RATE_CENTS", 2000)
    BILLING_SHIPPING_CENTS = _int_env("BILLING_SHIPPING_CENTS", 500)
    BILLING_CURRENCY = os.environ.get("BILLING_CURRENCY", "USD")

    # Admin portal session cookie
    ADMIN_SESSION_COOKIE = os.environ.get("ADMIN_SESSION_COOKIE", "psa_admin_session")
    ADMIN_SESSION_COOKIE_SECURE = os.environ.get("ADMIN_SESSION_COOKIE_SECURE", "false").lower() == "true"
    ADMIN_BCRYPT_ROUNDS = _int_env("ADMIN_BCRYPT_ROUNDS", 12)

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    ]
