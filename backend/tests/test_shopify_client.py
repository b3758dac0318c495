"""
Shopify draft order client against httpx.MockTransport.
"""

import json

import httpx
import pytest

from backoffice.errors import ExternalServiceFailure
from backoffice.extensions import shopify
from backoffice.services.shopify_client import ShopifyClient, clean_customer_id, money_from_cents


def test_money_from_cents():
    assert money_from_cents(2000) == "20.00"
    assert money_from_cents(2050) == "20.50"
    assert money_from_cents(5) == "0.05"


def test_clean_customer_id():
    assert clean_customer_id("gid://shopify/Customer/555") == 555
    assert clean_customer_id(777) == 777
    assert clean_customer_id(None) is None


@pytest.fixture
def captured():
    return []


@pytest.fixture
def client_for(app, captured):
    def _build(handler):
        def _record(request):
            captured.append(request)
            return handler(request)

        client = ShopifyClient(transport=httpx.MockTransport(_record))
        client.store = "psa-test.myshopify.com"
        client.access_token = "shpat_abc"
        client.api_version = "2024-04"
        client.send_attempts = 2
        client.send_backoff = 0
        return client

    return _build


def test_create_draft_request_shape(app, client_for, captured):
    client = client_for(lambda r: httpx.Response(201, json={"draft_order": {"id": 42, "invoice_url": "https://x/42"}}))

    with app.app_context():
        draft = client.create_draft_order(
            "gid://shopify/Customer/9",
            [{"title": "PSA Grading", "quantity": 1, "price": "20.00"}],
            tags="PSA Billing",
        )

    assert draft.draft_id == "42"
    assert draft.invoice_url == "https://x/42"
    request = captured[0]
    assert str(request.url) == "https://psa-test.myshopify.com/admin/api/2024-04/draft_orders.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_abc"
    body = json.loads(request.content)["draft_order"]
    assert body["customer"] == {"id": 9}
    assert body["use_customer_default_address"] is True
    assert body["tags"] == "PSA Billing"


def test_error_status_raises(app, client_for):
    client = client_for(lambda r: httpx.Response(422, json={"errors": "bad"}))
    with app.app_context():
        with pytest.raises(ExternalServiceFailure) as exc:
            client.get_draft_order(1)
    assert exc.value.step == "get_draft"
    assert exc.value.status_code == 422


def test_transport_error_raises(app, client_for):
    def _boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = client_for(_boom)
    with app.app_context():
        with pytest.raises(ExternalServiceFailure) as exc:
            client.delete_draft_order(1)
    assert exc.value.step == "delete_draft"
    assert exc.value.status_code is None


def test_unconfigured_client(app):
    client = ShopifyClient()
    with app.app_context():
        with pytest.raises(ExternalServiceFailure):
            client.get_draft_order(1)


def test_missing_draft_id_in_response(app, client_for):
    client = client_for(lambda r: httpx.Response(201, json={"draft_order": {}}))
    with app.app_context():
        with pytest.raises(ExternalServiceFailure) as exc:
            client.create_draft_order(1, [])
    assert exc.value.step == "create_draft"


def test_send_does_not_retry_other_errors(app, client_for, captured):
    client = client_for(lambda r: httpx.Response(401, json={"errors": "unauthorized"}))
    with app.app_context():
        with pytest.raises(ExternalServiceFailure):
            client.send_draft_invoice(5, to="a@b.com")
    assert len(captured) == 1


def test_init_app_reads_config(app):
    client = ShopifyClient()
    client.init_app(app)
    assert client.configured
    assert client.base_url.endswith("/admin/api/2024-04")
    assert client.send_backoff == 0
    # init_app registers itself; put the shared instance back
    app.extensions["shopify"] = shopify
