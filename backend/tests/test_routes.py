# Overview: Pytest coverage for the JSON API surface.

"""
API Route Tests

Drives the ledger through the Flask test client: status codes, the error
shape ({error, code, details}) and Idempotency-Key replays.
"""

import pytest


@pytest.fixture
def api(client, db_session):
    """Client with one product (500 cents, 10 in stock) and one customer."""
    product = client.post("/api/products/", json={
        "sku": "API-001", "name": "Mug", "price_cents": 500, "stock_quantity": 10,
    }).get_json()["product"]
    customer = client.post("/api/customers/", json={
        "name": "Sam Buyer", "credit_limit_cents": 100000,
    }).get_json()["customer"]
    return {"client": client, "product": product, "customer": customer}


def _sale(api, quantity=2, **extra):
    body = {
        "items": [{"product_id": api["product"]["id"], "quantity": quantity}],
        "payment_method": "cash",
    }
    body.update(extra)
    resp = api["client"].post("/api/sales/", json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["sale"]


class TestSystemRoutes:
    def test_health(self, client, db_session):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        assert resp.get_json()["checks"]["database"]["status"] == "healthy"

    def test_return_window_setting(self, client, db_session):
        resp = client.put("/api/system/settings/return-window", json={"days": 14})
        assert resp.status_code == 200
        assert resp.get_json() == {"return_window_days": 14}
        assert client.get("/api/returns/policies").get_json()["return_window_days"] == 14

    def test_json_body_required(self, client, db_session):
        resp = client.post("/api/sales/", data="not json", content_type="text/plain")
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "VALIDATION_ERROR"


class TestSaleAndReturnRoutes:
    def test_sale_then_return(self, api):
        client = api["client"]
        sale = _sale(api)

        eligibility = client.get(f"/api/returns/eligibility/{sale['id']}").get_json()
        assert eligibility["is_eligible"] is True

        resp = client.post("/api/returns/", json={
            "sale_id": sale["id"],
            "items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 2}],
            "reason": "Chipped",
            "refund_method": "cash",
            "processed_by": "alice",
        })
        assert resp.status_code == 201
        result = resp.get_json()["return"]
        assert result["refund_amount_cents"] == 1000
        assert result["sale_return_status"] == "full_return"

        summary = client.get(f"/api/returns/{result['return_id']}").get_json()["return"]
        assert summary["total_items_returned"] == 2

        balance = client.get("/api/ledger/balance").get_json()["balances"]
        assert balance["total"] == 0

    def test_over_quantity_maps_to_422(self, api):
        sale = _sale(api)
        resp = api["client"].post("/api/returns/", json={
            "sale_id": sale["id"],
            "items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 3}],
            "reason": "Chipped",
            "refund_method": "cash",
            "processed_by": "alice",
        })
        body = resp.get_json()
        assert resp.status_code == 422
        assert body["code"] == "QUANTITY_EXCEEDS_RETURNABLE"
        assert "details" in body

    def test_return_replay_with_idempotency_key(self, api):
        sale = _sale(api)
        body = {
            "sale_id": sale["id"],
            "items": [{"sale_item_id": sale["items"][0]["id"], "quantity": 1}],
            "reason": "Chipped",
            "refund_method": "cash",
            "processed_by": "alice",
        }
        headers = {"Idempotency-Key": "ret-abc"}

        first = api["client"].post("/api/returns/", json=body, headers=headers)
        again = api["client"].post("/api/returns/", json=body, headers=headers)

        assert first.status_code == 201
        assert again.status_code == 200
        assert again.get_json()["return"]["replayed"] is True
        assert again.get_json()["return"]["return_id"] == first.get_json()["return"]["return_id"]

    def test_unknown_sale_is_404(self, client, db_session):
        resp = client.get("/api/sales/9999")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "SALE_NOT_FOUND"


class TestBnplRoutes:
    def test_payment_flow_and_failures(self, api):
        client = api["client"]
        sale = _sale(api, payment_method="bnpl", customer_id=api["customer"]["id"])
        bnpl_id = sale["bnpl_transaction"]["id"]

        resp = client.post(f"/api/bnpl/{bnpl_id}/payments", json={
            "amount_cents": 5000, "payment_method": "cash", "processed_by": "alice",
        })
        assert resp.status_code == 422
        assert resp.get_json()["success"] is False
        assert resp.get_json()["code"] == "AMOUNT_EXCEEDS_DUE"

        resp = client.post(f"/api/bnpl/{bnpl_id}/payments", json={
            "amount_cents": 1000, "payment_method": "cash", "processed_by": "alice",
        })
        assert resp.status_code == 201
        assert resp.get_json()["status"] == "paid"

        resp = client.post(f"/api/bnpl/{bnpl_id}/payments", json={
            "amount_cents": 1, "payment_method": "cash", "processed_by": "alice",
        })
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "ALREADY_FULLY_PAID"

        history = client.get(f"/api/bnpl/{bnpl_id}/payments").get_json()["payments"]
        assert len(history) == 1

        summary = client.get(f"/api/customers/{api['customer']['id']}/bnpl-summary").get_json()
        assert summary["total_outstanding_cents"] == 0

    def test_overdue_listing(self, api):
        _sale(api, payment_method="bnpl", customer_id=api["customer"]["id"], due_date="2020-01-01T00:00:00Z")

        body = api["client"].get("/api/bnpl/overdue").get_json()
        assert body["count"] == 1
        assert body["bnpl_transactions"][0]["status"] == "overdue"


class TestLedgerRoutes:
    def test_opening_transfer_and_reconcile(self, client, db_session):
        assert client.post("/api/ledger/opening", json={"fund": "main", "amount_cents": 10000}).status_code == 201

        resp = client.post("/api/ledger/transfers", json={
            "from_fund": "main", "to_fund": "petty", "amount_cents": 2500,
        })
        assert resp.status_code == 201

        resp = client.get("/api/ledger/balance?fund=petty")
        assert resp.get_json() == {"fund": "petty", "balance_cents": 2500}

        entries = client.get("/api/ledger/entries?fund=main").get_json()
        assert entries["total"] == 2

        assert client.get("/api/ledger/reconcile").get_json()["ok"] is True

    def test_overdrawn_transfer_is_422(self, client, db_session):
        resp = client.post("/api/ledger/transfers", json={
            "from_fund": "petty", "to_fund": "main", "amount_cents": 1,
        })
        assert resp.status_code == 422
        assert resp.get_json()["code"] == "INSUFFICIENT_FUNDS"


class TestProductRoutes:
    def test_stock_adjustment(self, api):
        client = api["client"]
        product_id = api["product"]["id"]

        resp = client.post(f"/api/products/{product_id}/adjust", json={"delta": -3, "notes": "Counted short"})
        assert resp.status_code == 200
        assert resp.get_json()["product"]["stock_quantity"] == 7

        resp = client.post(f"/api/products/{product_id}/adjust", json={"delta": -8})
        assert resp.status_code == 422
        assert resp.get_json()["code"] == "INSUFFICIENT_STOCK"

        movements = client.get(f"/api/products/{product_id}").get_json()["stock_movements"]
        assert [m["movement_type"] for m in movements] == ["adjustment", "adjustment"]
