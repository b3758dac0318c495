# Overview: Shopify Admin REST client for draft orders (create, send invoice, fetch, delete).

"""
Payment-processor client.

One instance lives in ``extensions.shopify`` and is bound to the app with
``init_app``. Every call opens a short-lived ``httpx.Client``; any transport
error or non-2xx response surfaces as ``ExternalServiceFailure`` carrying
the step that failed and the HTTP status (when there was one).

Tests swap ``transport`` for an ``httpx.MockTransport``.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from flask import current_app

from ..errors import ExternalServiceFailure


STILL_CALCULATING = "not finished calculating"


@dataclass
class DraftOrder:
    draft_id: str
    invoice_url: Optional[str] = None
    raw: dict = field(default_factory=dict)


def money_from_cents(cents: int) -> str:
    """2000 -> "20.00" (Shopify prices are decimal strings)."""
    return f"{int(cents) // 100}.{int(cents) % 100:02d}"


def clean_customer_id(customer_id) -> Any:
    """Shopify wants the numeric id; accept gid://shopify/Customer/123 too."""
    digits = re.sub(r"\D", "", str(customer_id or ""))
    return int(digits) if digits else customer_id


class ShopifyClient:
    def __init__(self, app=None, *, transport: httpx.BaseTransport | None = None):
        self.transport = transport
        self.store = ""
        self.access_token = ""
        self.api_version = "2024-04"
        self.timeout = 20.0
        self.send_attempts = 6
        self.send_backoff = 0.5
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.store = (app.config.get("SHOPIFY_STORE") or "").strip()
        self.access_token = app.config.get("SHOPIFY_ADMIN_API_ACCESS_TOKEN") or ""
        self.api_version = app.config.get("SHOPIFY_API_VERSION") or "2024-04"
        self.timeout = float(app.config.get("SHOPIFY_TIMEOUT_SECONDS", 20))
        self.send_attempts = int(app.config.get("SHOPIFY_SEND_ATTEMPTS", 6))
        self.send_backoff = float(app.config.get("SHOPIFY_SEND_BACKOFF_SECONDS", 0.5))
        app.extensions["shopify"] = self

    @property
    def configured(self) -> bool:
        return bool(self.store and self.access_token)

    @property
    def base_url(self) -> str:
        store = self.store
        if not store.startswith(("http://", "https://")):
            store = f"https://{store}"
        return f"{store.rstrip('/')}/admin/api/{self.api_version}"

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={
                "X-Shopify-Access-Token": self.access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=self.timeout,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, *, step: str, json: dict | None = None) -> dict:
        if not self.configured:
            raise ExternalServiceFailure(
                "Missing SHOPIFY_STORE or SHOPIFY_ADMIN_API_ACCESS_TOKEN",
                step=step,
            )

        try:
            with self._client() as client:
                response = client.request(method, path, json=json)
        except httpx.RequestError as exc:
            current_app.logger.warning("Shopify %s %s transport error: %s", method, path, exc)
            raise ExternalServiceFailure(
                f"Shopify {method} {path} failed: {exc}",
                step=step,
            ) from exc

        if response.status_code >= 400:
            text = response.text or "(no body)"
            current_app.logger.warning(
                "Shopify %s %s failed %s: %s", method, path, response.status_code, text[:500]
            )
            raise ExternalServiceFailure(
                f"Shopify {method} {path} failed {response.status_code}: {text}",
                step=step,
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()

    def create_draft_order(
        self,
        customer_id,
        line_items: list[dict],
        *,
        currency: str = "USD",
        tags: str | None = None,
        note: str | None = None,
        note_attributes: list[dict] | None = None,
        shipping_address: dict | None = None,
    ) -> DraftOrder:
        """
        Create a draft order for a customer.

        Without a shipping_address the draft uses the customer's default
        address.
        """
        draft: dict[str, Any] = {
            "customer": {"id": clean_customer_id(customer_id)},
            "currency": currency,
            "line_items": line_items,
        }
        if tags:
            draft["tags"] = tags
        if note:
            draft["note"] = note
        if note_attributes:
            draft["note_attributes"] = note_attributes
        if shipping_address:
            draft["shipping_address"] = shipping_address
        else:
            draft["use_customer_default_address"] = True

        data = self._request("POST", "/draft_orders.json", step="create_draft", json={"draft_order": draft})
        body = data.get("draft_order") or {}
        if not body.get("id"):
            raise ExternalServiceFailure("Shopify returned no draft order id", step="create_draft")

        current_app.logger.info("Created Shopify draft order %s", body["id"])
        return DraftOrder(
            draft_id=str(body["id"]),
            invoice_url=body.get("invoice_url"),
            raw=body,
        )

    def get_draft_order(self, draft_id) -> dict:
        data = self._request("GET", f"/draft_orders/{draft_id}.json", step="get_draft")
        return data.get("draft_order") or {}

    def delete_draft_order(self, draft_id) -> None:
        self._request("DELETE", f"/draft_orders/{draft_id}.json", step="delete_draft")
        current_app.logger.info("Deleted Shopify draft order %s", draft_id)

    def send_draft_invoice(
        self,
        draft_id,
        *,
        to: str,
        subject: str | None = None,
        message: str | None = None,
    ) -> dict:
        """
        Email the draft order invoice.

        Shopify rejects sends while it is still calculating a fresh draft;
        those responses are retried with a linear backoff, poking the draft
        between attempts. Any other failure is raised immediately.
        """
        invoice: dict[str, Any] = {"to": to}
        if subject:
            invoice["subject"] = subject
        if message:
            invoice["custom_message"] = message
        payload = {"draft_order_invoice": invoice}
        path = f"/draft_orders/{draft_id}/send_invoice.json"

        for attempt in range(1, self.send_attempts + 1):
            try:
                return self._request("POST", path, step="send_invoice", json=payload)
            except ExternalServiceFailure as exc:
                if STILL_CALCULATING not in exc.message:
                    raise
                current_app.logger.info(
                    "Draft %s still calculating (attempt %s/%s)", draft_id, attempt, self.send_attempts
                )
            try:
                self.get_draft_order(draft_id)
            except ExternalServiceFailure as exc:
                current_app.logger.warning("Polling draft %s failed: %s", draft_id, exc.message)
            time.sleep(self.send_backoff * attempt)

        raise ExternalServiceFailure(
            f"Draft {draft_id} still calculating after {self.send_attempts} attempts",
            step="send_invoice",
        )
