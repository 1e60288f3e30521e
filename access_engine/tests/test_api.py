"""
HTTP surface: admin gate, error contract, end-to-end purchase flow.
"""
import json

import pytest

PHONE = "9876543210"


class TestAdminAuth:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/admin/feature-requests"),
            ("get", "/api/admin/feature-requests/pending-count"),
            ("get", "/api/admin/feature-pricing"),
            ("get", "/api/admin/feature-access"),
            ("get", "/api/admin/user-feature-access/expiring"),
            ("post", "/api/admin/user-feature-access/expire"),
        ],
    )
    def test_missing_key_is_401(self, client, method, path):
        resp = getattr(client, method)(path)

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_wrong_key_is_401(self, client):
        resp = client.get("/api/admin/feature-requests", headers={"X-Admin-Key": "nope"})

        assert resp.status_code == 401


class TestErrorContract:
    def test_validation_error_shape(self, client):
        resp = client.post("/api/feature-access/check", json={"phone": "123", "feature_key": "SOS"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert body["detail"] == body["error"]["message"]
        assert resp.headers["x-request-id"] == body["error"]["request_id"]

    def test_missing_body_field_is_400(self, client):
        resp = client.post("/api/feature-access/check", json={"phone": PHONE})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"x-request-id": "req-123"})

        assert resp.status_code == 200
        assert resp.headers["x-request-id"] == "req-123"

    def test_not_found_shape(self, client, admin_headers):
        resp = client.get("/api/admin/feature-requests/does-not-exist", headers=admin_headers)

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_conflict_carries_details(self, client, catalog):
        first = client.post("/api/feature-requests", json={"phone": PHONE, "name": "Asha", "requested_features": ["SOS"]})
        resp = client.post("/api/feature-requests", json={"phone": PHONE, "name": "Asha", "requested_features": ["SOS"]})

        assert resp.status_code == 409
        details = resp.json()["error"]["details"]
        assert details["existing_request_id"] == first.json()["data"]["id"]
        assert details["can_withdraw"] is True

    def test_invalid_state_reports_current_status(self, client, catalog, admin_headers):
        created = client.post("/api/feature-requests", json={"phone": PHONE, "name": "Asha", "requested_features": ["SOS"]})
        request_id = created.json()["data"]["id"]
        client.post(f"/api/admin/feature-requests/{request_id}/reject", json={"rejection_reason": "no"}, headers=admin_headers)

        resp = client.post(f"/api/feature-requests/{request_id}/withdraw", json={"phone": PHONE})

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_state"
        assert resp.json()["error"]["details"]["current_status"] == "REJECTED"


def test_healthz_and_readyz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"status": "ok"}


def test_public_pricing(client, catalog):
    resp = client.get("/api/feature-requests/pricing")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert {f["feature_key"] for f in data["features"]} == {"SOS", "CONNECT", "CHALLENGE"}
    assert data["bundles"][0]["included_features"] == ["SOS", "CONNECT"]


def test_admin_pricing_crud(client, admin_headers):
    created = client.post(
        "/api/admin/feature-pricing",
        json={"feature_key": "SOS", "name": "SOS Tab", "price": 100, "duration_in_days": 30},
        headers=admin_headers,
    )
    assert created.status_code == 201
    pricing_id = created.json()["data"]["id"]

    bad = client.patch(f"/api/admin/feature-pricing/{pricing_id}", json={"compare_at_price": 10}, headers=admin_headers)
    assert bad.status_code == 400

    ok = client.patch(f"/api/admin/feature-pricing/{pricing_id}", json={"price": 120}, headers=admin_headers)
    assert ok.json()["data"]["price"] == 120

    assert client.delete(f"/api/admin/feature-pricing/{pricing_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/admin/feature-pricing/{pricing_id}", headers=admin_headers).status_code == 404
    restored = client.post(f"/api/admin/feature-pricing/{pricing_id}/restore", headers=admin_headers)
    assert restored.json()["data"]["is_deleted"] is False


def test_gate_toggle(client, admin_headers):
    resp = client.put(
        "/api/admin/feature-access", json={"feature_key": "SOS", "is_active": False}, headers=admin_headers
    )
    assert resp.status_code == 200

    check = client.post("/api/feature-access/check", json={"phone": PHONE, "feature_key": "SOS"})
    assert check.json()["data"]["reason"] == "FEATURE_INACTIVE"


def test_purchase_flow_over_http(client, catalog, gated, admin_headers, fake_provider):
    submitted = client.post(
        "/api/feature-requests",
        json={"phone": PHONE, "name": "asha rao", "requested_features": ["SOS", "CONNECT"]},
    )
    assert submitted.status_code == 201
    request_id = submitted.json()["data"]["id"]

    assert client.get("/api/admin/feature-requests/pending-count", headers=admin_headers).json()["data"]["count"] == 1

    approved = client.post(
        f"/api/admin/feature-requests/{request_id}/approve",
        json={"duration_in_days": 30, "send_whatsapp": False},
        headers=admin_headers,
    )
    assert approved.status_code == 200
    order_id = approved.json()["data"]["request"]["order_id"]
    assert approved.json()["data"]["payment_url"].startswith("https://pay.test/mock-pay/")

    webhook = client.post(
        "/api/payments/webhook",
        content=json.dumps({"id": "evt_1", "type": "payment_link.paid", "order_id": order_id, "payment_id": "pay_1"}),
    )
    assert webhook.json() == {"received": True, "event_id": "evt_1", "action": "confirmed"}

    check = client.post("/api/feature-access/check", json={"phone": PHONE, "feature_key": "CONNECT"})
    decision = check.json()["data"]
    assert decision["has_access"] is True
    assert decision["reason"] == "FEATURE_ACCESS_VALID"
    assert decision["detail"]["days_remaining"] == 30

    listing = client.get("/api/admin/user-feature-access", params={"phone": PHONE}, headers=admin_headers)
    records = listing.json()["data"]
    assert {r["feature_key"] for r in records} == {"SOS", "CONNECT"}
    assert all(r["current_status"] == "ACTIVE" for r in records)

    detail = client.get(f"/api/admin/feature-requests/{request_id}", headers=admin_headers).json()["data"]
    assert detail["status"] == "COMPLETED"
    assert len(detail["access"]) == 2

    confirm_again = client.post(
        "/api/admin/payments/confirm", json={"order_id": order_id, "payment_id": "pay_1"}, headers=admin_headers
    )
    assert confirm_again.json()["data"]["already_processed"] is True


def test_invalid_webhook_is_400(client):
    resp = client.post("/api/payments/webhook", content=b"garbage")

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_operator_grant_extend_cancel(client, admin_headers, gated):
    granted = client.post(
        "/api/admin/user-feature-access/grant",
        json={"phone": PHONE, "feature_key": "CHALLENGE", "duration_in_days": 10},
        headers=admin_headers,
    )
    assert granted.status_code == 201
    access_id = granted.json()["data"]["id"]

    extended = client.post(
        f"/api/admin/user-feature-access/{access_id}/extend", json={"additional_days": 5}, headers=admin_headers
    )
    assert extended.json()["data"]["days_remaining"] == 15

    cancelled = client.post(f"/api/admin/user-feature-access/{access_id}/cancel", headers=admin_headers)
    assert cancelled.json()["data"]["current_status"] == "CANCELLED"

    check = client.post("/api/feature-access/check", json={"phone": PHONE, "feature_key": "CHALLENGE"})
    assert check.json()["data"]["has_access"] is False

    sweep = client.post("/api/admin/user-feature-access/expire", headers=admin_headers)
    assert sweep.json()["data"]["expired"] == 0
