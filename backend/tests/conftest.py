"""
Pytest fixtures for back-office tests.

Provides the app on an in-memory SQLite database, per-test table cleanup,
submission/group factories, an admin login, and a fake Shopify Admin API
served through httpx.MockTransport.
"""

import json
import re

import httpx
import pytest

from backoffice import create_app
from backoffice.config import Config
from backoffice.extensions import db, shopify
from backoffice.models import Card, Submission
from backoffice.services.admin_session_service import create_admin


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ADMIN_BCRYPT_ROUNDS = 4
    SHOPIFY_STORE = "psa-test.myshopify.com"
    SHOPIFY_ADMIN_API_ACCESS_TOKEN = "shpat_test"
    SHOPIFY_SEND_ATTEMPTS = 3
    SHOPIFY_SEND_BACKOFF_SECONDS = 0
    BILLING_RATE_CENTS = 2000
    BILLING_SHIPPING_CENTS = 500
    CORS_ORIGINS = ["http://localhost:5173"]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


class FakeShopify:
    """
    In-memory stand-in for the Shopify draft order endpoints.

    Knobs:
        fail_create / fail_send / fail_delete: HTTP status to answer with
        calculating: how many send attempts answer "not finished calculating"
    """

    def __init__(self):
        self.requests = []
        self.drafts = {}
        self.sent = []
        self.deleted = []
        self.next_id = 9001
        self.fail_create = None
        self.fail_send = None
        self.fail_delete = None
        self.calculating = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))

        if request.method == "POST" and path.endswith("/draft_orders.json"):
            if self.fail_create:
                return httpx.Response(self.fail_create, json={"errors": "create failed"})
            draft_id = self.next_id
            self.next_id += 1
            draft = dict(body["draft_order"], id=draft_id, invoice_url=f"https://shop.test/invoices/{draft_id}")
            self.drafts[str(draft_id)] = draft
            return httpx.Response(201, json={"draft_order": draft})

        match = re.search(r"/draft_orders/(\d+)/send_invoice\.json$", path)
        if match and request.method == "POST":
            if self.calculating > 0:
                self.calculating -= 1
                return httpx.Response(
                    422,
                    json={"errors": {"base": ["This order has not finished calculating, please try again later"]}},
                )
            if self.fail_send:
                return httpx.Response(self.fail_send, json={"errors": "send failed"})
            self.sent.append((match.group(1), body["draft_order_invoice"]))
            return httpx.Response(202, json={"draft_order_invoice": body["draft_order_invoice"]})

        match = re.search(r"/draft_orders/(\d+)\.json$", path)
        if match and request.method == "GET":
            draft = self.drafts.get(match.group(1))
            if draft is None:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"draft_order": draft})
        if match and request.method == "DELETE":
            if self.fail_delete:
                return httpx.Response(self.fail_delete, json={"errors": "delete failed"})
            self.deleted.append(match.group(1))
            self.drafts.pop(match.group(1), None)
            return httpx.Response(200, content=b"")

        return httpx.Response(404, json={"errors": "Not Found"})

    def calls(self, method: str, suffix: str) -> list:
        return [r for r in self.requests if r[0] == method and r[1].endswith(suffix)]


@pytest.fixture(scope='function')
def fake_shopify(app):
    """Route every Shopify call of this test to a FakeShopify."""
    fake = FakeShopify()
    shopify.transport = httpx.MockTransport(fake.handler)
    yield fake
    shopify.transport = None


@pytest.fixture(scope='function')
def make_submission(db_session):
    """
    Factory: make_submission("PSA-1001", status="received", cards=2, ...)

    Creates the submission and one Card row per card, every card at the
    submission's status.
    """
    def _make(
        code,
        *,
        status="received",
        cards=2,
        email="collector@example.com",
        customer_id="gid://shopify/Customer/555",
        address=None,
        card_status=None,
    ):
        sub = Submission(
            code=code,
            customer_email=email,
            shopify_customer_id=customer_id,
            status=status,
            cards=cards,
            grading_service="Value",
            shipping_address=address if address is not None else {
                "name": "Pat Collector",
                "address1": "1 Main St",
                "city": "Springfield",
                "province": "IL",
                "zip": "62701",
                "country": "US",
            },
        )
        db_session.add(sub)
        db_session.flush()
        for i in range(cards):
            db_session.add(Card(
                submission_id=sub.id,
                card_index=i + 1,
                card_description=f"{code} card {i + 1}",
                status=card_status if card_status is not None else status,
            ))
        db_session.commit()
        return sub

    return _make


@pytest.fixture(scope='function')
def owner(db_session):
    user = create_admin("owner@psa.test", "Password123", name="Owner", role="owner")
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def staff(db_session):
    user = create_admin("staff@psa.test", "Password123", name="Staff", role="staff")
    db_session.commit()
    return user


def get_auth_token(client, email: str, password: str) -> str:
    """Helper to get a session token for an admin."""
    response = client.post('/api/admin/auth/login', json={
        'email': email,
        'password': password,
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def owner_headers(client, owner):
    return auth_headers(get_auth_token(client, "owner@psa.test", "Password123"))


@pytest.fixture(scope='function')
def staff_headers(client, staff):
    return auth_headers(get_auth_token(client, "staff@psa.test", "Password123"))
