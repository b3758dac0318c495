"""
HTTP surface of the back office: JSON shapes, status codes and the
error taxonomy (``{"ok": false, "error": code}``).
"""

import pytest

from backoffice.models import Invoice, Submission


@pytest.fixture
def headers(staff_headers):
    return staff_headers


def _create_group(client, headers, notes=None):
    resp = client.post("/api/admin/groups", json={"notes": notes}, headers=headers)
    assert resp.status_code == 201
    return resp.json["group"]


class TestGroupRoutes:

    def test_group_flow(self, client, headers, make_submission):
        make_submission("PSA-9001", status="received", cards=2)
        make_submission("PSA-9002", status="received", cards=1)
        group = _create_group(client, headers, "march")

        added = client.post(
            f"/api/admin/groups/{group['code']}/members",
            json={"submissions": ["PSA-9001", "PSA-9002"]},
            headers=headers,
        )
        assert added.status_code == 200
        assert added.json == {"ok": True, "added_submissions": 2, "added_cards": 3}

        cards = client.get(f"/api/admin/groups/{group['code']}/cards", headers=headers).json["cards"]
        order = [c["id"] for c in reversed(cards)]
        resp = client.patch(
            f"/api/admin/groups/{group['code']}/cards/order",
            json={"order": order},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json["updated"] == 3
        reordered = client.get(f"/api/admin/groups/{group['id']}/cards", headers=headers).json["cards"]
        assert [c["id"] for c in reordered] == order
        assert [c["card_no"] for c in reordered] == [1, 2, 3]

        shipped = client.post(
            f"/api/admin/groups/{group['code']}/status",
            json={"status": "at_psa"},
            headers=headers,
        )
        assert shipped.status_code == 200
        assert shipped.json["group"]["status"] == "AtPSA"
        assert shipped.json["updated_submissions"] == 2

        locked = client.post(
            f"/api/admin/groups/{group['code']}/submissions/remove",
            json={"submissions": ["PSA-9001"]},
            headers=headers,
        )
        assert locked.status_code == 409
        assert locked.json["error"] == "group_locked"

        detail = client.get(f"/api/admin/groups/{group['code'].lower()}", headers=headers)
        assert detail.json["group"]["submission_count"] == 2
        assert detail.json["group"]["card_count"] == 3

    def test_list_groups(self, client, headers):
        _create_group(client, headers)
        _create_group(client, headers)
        resp = client.get("/api/admin/groups?limit=1", headers=headers)
        assert resp.status_code == 200
        assert len(resp.json["groups"]) == 1
        assert resp.json["has_more"] is True

    def test_unknown_group(self, client, headers):
        resp = client.get("/api/admin/groups/GRP-9999", headers=headers)
        assert resp.status_code == 404
        assert resp.json["error"] == "not_found"

    def test_members_requires_list(self, client, headers):
        group = _create_group(client, headers)
        resp = client.post(f"/api/admin/groups/{group['code']}/members", json={}, headers=headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "validation_error"

    def test_duplicate_membership(self, client, headers, make_submission):
        make_submission("PSA-9003")
        first = _create_group(client, headers)
        second = _create_group(client, headers)
        client.post(f"/api/admin/groups/{first['code']}/members", json={"submissions": ["PSA-9003"]}, headers=headers)

        resp = client.post(
            f"/api/admin/groups/{second['code']}/members",
            json={"submissions": "PSA-9003"},
            headers=headers,
        )
        assert resp.status_code == 409
        assert resp.json["error"] == "duplicate_open_membership"
        assert resp.json["conflicts"][0]["group"] == first["code"]

    def test_bad_card_order(self, client, headers, make_submission):
        make_submission("PSA-9004", cards=2)
        group = _create_group(client, headers)
        client.post(f"/api/admin/groups/{group['code']}/members", json={"submissions": ["PSA-9004"]}, headers=headers)

        resp = client.patch(f"/api/admin/groups/{group['code']}/cards/order", json={"order": [1]}, headers=headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "invalid_card_order"

        resp = client.patch(f"/api/admin/groups/{group['code']}/cards/order", json={"order": "1,2"}, headers=headers)
        assert resp.status_code == 400

    def test_close_and_reopen(self, client, headers, make_submission):
        make_submission("PSA-9005", status="shipped_to_customer")
        group = _create_group(client, headers)
        client.post(f"/api/admin/groups/{group['code']}/members", json={"submissions": ["PSA-9005"]}, headers=headers)

        blocked = client.post(f"/api/admin/groups/{group['code']}/close", headers=headers)
        assert blocked.status_code == 400
        assert blocked.json["error"] == "not_all_delivered"
        assert blocked.json["pending"] == [{"code": "PSA-9005", "status": "shipped_to_customer"}]

        client.post("/api/admin/submissions/set-status", json={"submission": "PSA-9005", "status": "delivered"}, headers=headers)
        closed = client.post(f"/api/admin/groups/{group['code']}/close", headers=headers)
        assert closed.status_code == 200
        assert closed.json["group"]["status"] == "Closed"

        reopened = client.post(f"/api/admin/groups/{group['code']}/reopen", headers=headers)
        assert reopened.json["group"]["status"] == "Returned"
        assert reopened.json["group"]["reopen_hold"] is True

        again = client.post(f"/api/admin/groups/{group['code']}/reopen", headers=headers)
        assert again.status_code == 400
        assert again.json["error"] == "cannot_move_backward"


class TestSubmissionRoutes:

    def test_set_status_single(self, client, headers, make_submission):
        make_submission("PSA-9101", status="received")
        resp = client.post(
            "/api/admin/submissions/set-status",
            json={"submission": "PSA-9101", "status": "shipped_to_psa"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json["status"] == "shipped_to_psa"
        assert resp.json["updated_cards"] == 2

    def test_set_status_backward(self, client, headers, make_submission):
        make_submission("PSA-9102", status="graded")
        resp = client.post(
            "/api/admin/submissions/set-status",
            json={"submission": "PSA-9102", "status": "received"},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json["error"] == "cannot_move_backward"

    def test_set_status_bulk(self, client, headers, make_submission):
        make_submission("PSA-9103", status="received")
        make_submission("PSA-9104", status="graded")
        resp = client.post(
            "/api/admin/submissions/set-status",
            json={"submissions": ["PSA-9103", "PSA-9104"], "status": "in_grading"},
            headers=headers,
        )
        assert resp.json == {"ok": True, "updated_submissions": 1, "updated_cards": 2, "matched": 2}

    def test_invalid_status(self, client, headers, make_submission):
        make_submission("PSA-9105")
        resp = client.post(
            "/api/admin/submissions/set-status",
            json={"submission": "PSA-9105", "status": "nope"},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json["error"] == "invalid_status"

    def test_correct_status(self, client, headers, make_submission):
        make_submission("PSA-9106", status="received")
        ok = client.post(
            "/api/admin/submissions/correct-status",
            json={"submission": "PSA-9106", "status": "submitted_paid"},
            headers=headers,
        )
        assert ok.status_code == 200
        assert ok.json["corrected"] is True

        forward = client.post(
            "/api/admin/submissions/correct-status",
            json={"submission": "PSA-9106", "status": "graded"},
            headers=headers,
        )
        assert forward.status_code == 400
        assert forward.json["error"] == "not_backward"

    def test_card_status(self, client, headers, make_submission):
        sub = make_submission("PSA-9107", status="received_from_psa", cards=1)
        card_id = sub.card_rows[0].id
        resp = client.post("/api/admin/cards/set-status", json={"card_id": card_id, "status": "paid"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json["card"]["status"] == "paid"

    def test_get_submission(self, client, headers, make_submission):
        make_submission("PSA-9108", cards=2)
        resp = client.get("/api/admin/submissions/psa-9108", headers=headers)
        assert resp.status_code == 200
        assert len(resp.json["submission"]["card_rows"]) == 2

    def test_worklist(self, client, headers, make_submission):
        make_submission("PSA-9111", status="received", email="ann@example.com")
        make_submission("PSA-9112", status="graded", email="bob@example.com")
        make_submission("PSA-9113", status="received", email="ann@example.com")

        resp = client.get("/api/admin/submissions", headers=headers)
        assert resp.status_code == 200
        assert resp.json["total"] == 3
        assert [s["code"] for s in resp.json["items"]] == ["PSA-9113", "PSA-9112", "PSA-9111"]

        by_email = client.get("/api/admin/submissions?q=ANN@", headers=headers).json
        assert [s["code"] for s in by_email["items"]] == ["PSA-9113", "PSA-9111"]

        by_code = client.get("/api/admin/submissions?q=psa-9112", headers=headers).json
        assert [s["code"] for s in by_code["items"]] == ["PSA-9112"]

        ready = client.get("/api/admin/submissions?status=ready_to_ship", headers=headers).json
        assert ready["total"] == 2

        paged = client.get("/api/admin/submissions?limit=1&page=2", headers=headers).json
        assert (paged["page"], paged["limit"], paged["total"]) == (2, 1, 3)
        assert [s["code"] for s in paged["items"]] == ["PSA-9112"]

    def test_worklist_bad_status(self, client, headers):
        resp = client.get("/api/admin/submissions?status=teleported", headers=headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "invalid_status"


class TestBillingRoutes:

    def test_drafts_send_and_pay(self, client, headers, db_session, make_submission, fake_shopify):
        make_submission("PSA-9201", status="received_from_psa", cards=2)

        drafts = client.post(
            "/api/admin/billing/drafts",
            json={"customer_email": "collector@example.com"},
            headers=headers,
        )
        assert drafts.status_code == 200
        (inv,) = drafts.json["invoices"]
        assert inv["status"] == "draft"
        assert inv["total_cents"] == 4500

        sent = client.post(f"/api/admin/billing/invoices/{inv['invoice_id']}/send", json={}, headers=headers)
        assert sent.status_code == 200
        assert sent.json["sent_to"] == "collector@example.com"

        awaiting = client.get("/api/admin/billing/invoices?bucket=awaiting", headers=headers)
        assert [i["id"] for i in awaiting.json["invoices"]] == [inv["invoice_id"]]

        paid = client.post(
            f"/api/admin/billing/invoices/{inv['invoice_id']}/status",
            json={"status": "paid"},
            headers=headers,
        )
        assert paid.status_code == 200
        assert paid.json["invoice"]["status"] == "paid"

        db_session.expire_all()
        assert db_session.query(Submission).filter_by(code="PSA-9201").one().status == "paid"

    def test_send_failure_is_502_with_step(self, client, headers, db_session, make_submission, fake_shopify):
        make_submission("PSA-9202", status="received_from_psa")
        inv = client.post(
            "/api/admin/billing/drafts",
            json={"submissions": ["PSA-9202"], "create_drafts": False},
            headers=headers,
        ).json["invoices"][0]
        fake_shopify.fail_send = 500

        resp = client.post(f"/api/admin/billing/invoices/{inv['invoice_id']}/send", headers=headers)

        assert resp.status_code == 502
        assert resp.json["error"] == "external_service_failure"
        assert resp.json["step"] == "send_invoice"
        db_session.expire_all()
        invoice = db_session.get(Invoice, inv["invoice_id"])
        assert invoice.status == "pending"
        assert invoice.draft_id is None

    def test_nothing_to_bill(self, client, headers, make_submission, fake_shopify):
        make_submission("PSA-9203", status="graded")
        resp = client.post("/api/admin/billing/drafts", json={"customer_email": "collector@example.com"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "no_eligible_submissions"

    def test_drafts_needs_target(self, client, headers):
        resp = client.post("/api/admin/billing/drafts", json={}, headers=headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "validation_error"

    def test_bad_rate(self, client, headers, make_submission):
        make_submission("PSA-9204", status="received_from_psa")
        resp = client.post(
            "/api/admin/billing/drafts",
            json={"submissions": ["PSA-9204"], "rate_cents": 19.99},
            headers=headers,
        )
        assert resp.status_code == 400

    def test_split_route(self, client, headers, make_submission, fake_shopify):
        make_submission("PSA-9205", status="received_from_psa", cards=1)
        make_submission(
            "PSA-9206",
            status="received_from_psa",
            cards=1,
            address={"line1": "9 Pier St", "city": "Boston", "region": "MA", "postal": "02110"},
        )
        inv = client.post(
            "/api/admin/billing/drafts",
            json={
                "customer_email": "collector@example.com",
                "address_groups": [{"addr": {"line1": "9 Pier St", "city": "Boston"}, "subs": ["PSA-9205", "PSA-9206"]}],
                "create_drafts": False,
            },
            headers=headers,
        ).json["invoices"][0]

        resp = client.post(f"/api/admin/billing/invoices/{inv['invoice_id']}/split", json={}, headers=headers)
        assert resp.status_code == 200
        assert resp.json["parent_invoice_id"] == inv["invoice_id"]
        assert len(resp.json["invoices"]) == 2

    def test_bad_address_groups(self, client, headers, make_submission):
        make_submission("PSA-9207", status="received_from_psa")
        resp = client.post(
            "/api/admin/billing/drafts",
            json={"submissions": ["PSA-9207"], "address_groups": {"addr": {}}},
            headers=headers,
        )
        assert resp.status_code == 400

    def test_upcharges_and_to_bill(self, client, headers, make_submission):
        sub = make_submission("PSA-9208", status="received_from_psa", cards=1)
        card_id = sub.card_rows[0].id
        resp = client.post(
            "/api/admin/billing/upcharges",
            json={"items": [{"card_id": card_id, "upcharge_cents": 1000}]},
            headers=headers,
        )
        assert resp.json == {"ok": True, "updated": 1, "cards": 1}

        worklist = client.get("/api/admin/billing/to-bill", headers=headers).json
        assert worklist["bundles"][0]["submissions"] == ["PSA-9208"]

    def test_find_invoice(self, client, headers, make_submission, fake_shopify):
        make_submission("PSA-9209", status="received_from_psa")
        client.post("/api/admin/billing/drafts", json={"submissions": ["PSA-9209"]}, headers=headers)

        found = client.get("/api/admin/billing/find-invoice?submission=PSA-9209", headers=headers)
        assert found.status_code == 200
        assert found.json["invoice"]["submissions"] == ["PSA-9209"]
        assert found.json["invoice"]["items"]

        missing = client.get("/api/admin/billing/find-invoice?submission=PSA-0000", headers=headers)
        assert missing.status_code == 404

    def test_unknown_invoice(self, client, headers):
        resp = client.get("/api/admin/billing/invoices/424242", headers=headers)
        assert resp.status_code == 404

    def test_cards_preview(self, client, headers, make_submission):
        make_submission("PSA-9210", status="received_from_psa", cards=2)
        resp = client.get("/api/admin/billing/cards-preview?subs=PSA-9210&rate_cents=2500", headers=headers)
        assert resp.status_code == 200
        assert [r["amount_cents"] for r in resp.json["rows"]] == [2500, 2500]

        empty = client.get("/api/admin/billing/cards-preview", headers=headers)
        assert empty.json == {"ok": True, "rows": []}

        bad = client.get("/api/admin/billing/cards-preview?subs=PSA-9210&rate_cents=19.99", headers=headers)
        assert bad.status_code == 400

    def test_preview_prefill(self, client, headers, make_submission, fake_shopify):
        make_submission("PSA-9211", status="received_from_psa", cards=1)
        inv = client.post(
            "/api/admin/billing/drafts",
            json={"submissions": ["PSA-9211"], "create_drafts": False},
            headers=headers,
        ).json["invoices"][0]

        resp = client.get("/api/admin/billing/preview/prefill?subs=PSA-9211", headers=headers)
        assert resp.status_code == 200
        assert resp.json["invoice_id"] == inv["invoice_id"]
        assert resp.json["items"] == []

        other = client.get(
            "/api/admin/billing/preview/prefill",
            query_string={"subs": "PSA-9211", "ship_to": '{"line1": "9 Pier St", "city": "Boston"}'},
            headers=headers,
        )
        assert other.json["invoice_id"] is None

    @pytest.mark.parametrize("ship_to", ["not json", "[1, 2]"])
    def test_preview_prefill_bad_ship_to(self, client, headers, ship_to):
        resp = client.get(
            "/api/admin/billing/preview/prefill",
            query_string={"subs": "PSA-1", "ship_to": ship_to},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json["error"] == "validation_error"


class TestSystem:

    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["checks"]["database"]["status"] == "healthy"
        assert resp.json["checks"]["payment_processor"]["status"] == "healthy"

    def test_cors_for_allowed_origin(self, client, db_session):
        resp = client.get("/health", headers={"Origin": "http://localhost:5173"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
        assert resp.headers["Access-Control-Allow-Credentials"] == "true"

        other = client.get("/health", headers={"Origin": "http://evil.test"})
        assert "Access-Control-Allow-Origin" not in other.headers
