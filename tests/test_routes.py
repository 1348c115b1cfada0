from uuid import uuid4

import pytest

from app import create_app
from conftest import SHIPPING, header_identity, stock_of


@pytest.fixture
def guest():
    return {"X-Session-Id": str(uuid4())}


ADMIN = {"X-User-Id": "admin-1", "X-Admin": "1"}


def _place(client, headers, product_id, quantity=1, **extra):
    resp = client.post("/api/cart/items", json={"product_id": product_id, "quantity": quantity}, headers=headers)
    assert resp.status_code == 201
    body = {"shipping_info": SHIPPING, "guest_email": "ada@example.com", **extra}
    return client.post("/api/orders", json=body, headers=headers)


def test_guest_checkout_and_payment(client, make_product, guest, gateway):
    product_id = make_product(stock=4, price="8.00")

    resp = _place(client, guest, product_id, quantity=2)
    assert resp.status_code == 201
    order = resp.get_json()
    assert order["total_amount"] == 16.0
    assert stock_of(product_id) == 2
    assert client.get("/api/cart", headers=guest).get_json()["items"] == []

    intent = client.post("/api/payments/intent", json={"order_id": order["id"]}, headers=guest).get_json()
    assert intent["client_secret"]

    gateway.set_status(intent["intent_id"], "succeeded")
    payload = gateway.build_event("payment_intent.succeeded", intent["intent_id"])
    ack = client.post(
        "/api/payments/webhook",
        data=payload,
        headers={"Stripe-Signature": gateway.sign_payload(payload), "Content-Type": "application/json"},
    )
    assert ack.status_code == 200
    assert ack.get_json()["processed"] is True

    status = client.get(f"/api/payments/status/{order['id']}", headers=guest).get_json()
    assert status["order_status"] == "paid"
    detail = client.get(f"/api/orders/{order['id']}", headers=guest).get_json()
    assert [log["to_status"] for log in detail["status_logs"]] == ["pending", "payment_processing", "paid"]


def test_insufficient_stock_is_a_conflict(client, make_product, guest):
    product_id = make_product(stock=1)

    resp = _place(client, guest, product_id, quantity=2)

    assert resp.status_code == 409
    body = resp.get_json()
    assert body["error"] == "INSUFFICIENT_STOCK"
    assert body["details"] == {"product_id": product_id, "available": 1, "requested": 2}


def test_idempotency_header(client, make_product, guest):
    product_id = make_product(stock=5)
    headers = {**guest, "Idempotency-Key": "checkout-123"}

    first = _place(client, headers, product_id)
    second = client.post("/api/orders", json={"shipping_info": SHIPPING, "guest_email": "ada@example.com"}, headers=headers)

    assert second.status_code == 201
    assert second.get_json()["id"] == first.get_json()["id"]


def test_session_header_must_be_uuid4(client, database):
    resp = client.get("/api/cart", headers={"X-Session-Id": "not-a-uuid"})

    assert resp.status_code == 422
    assert resp.get_json()["error"] == "VALIDATION_ERROR"


def test_anonymous_caller_without_session_is_rejected(client, database):
    assert client.get("/api/cart").status_code == 422


def test_cart_item_update_and_delete(client, make_product, guest):
    product_id = make_product()
    client.post("/api/cart/items", json={"product_id": product_id, "quantity": 1}, headers=guest)

    assert client.patch(f"/api/cart/items/{product_id}", json={"quantity": 3}, headers=guest).status_code == 200
    assert client.get("/api/cart", headers=guest).get_json()["item_count"] == 3
    assert client.delete(f"/api/cart/items/{product_id}", headers=guest).status_code == 200
    assert client.get("/api/cart", headers=guest).get_json()["items"] == []


def test_merge_guest_cart_on_login(client, make_product, guest):
    product_id = make_product()
    client.post("/api/cart/items", json={"product_id": product_id, "quantity": 2}, headers=guest)

    resp = client.post("/api/cart/merge", headers={**guest, "X-User-Id": "user-1"})

    assert resp.status_code == 200
    assert resp.get_json()["items"][0]["quantity"] == 2
    assert client.post("/api/cart/merge", headers=guest).status_code == 403


def test_user_cancels_own_order(client, make_product, guest):
    product_id = make_product(stock=3)
    order = _place(client, guest, product_id).get_json()

    resp = client.post(f"/api/orders/{order['id']}/cancel", json={"reason": "changed my mind"}, headers=guest)

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    assert stock_of(product_id) == 3
    again = client.post(f"/api/orders/{order['id']}/cancel", headers=guest)
    assert again.status_code == 409
    assert again.get_json()["error"] == "INVALID_TRANSITION"


def test_anonymous_caller_cannot_cancel(client, make_product, guest):
    product_id = make_product(stock=3)
    order = _place(client, guest, product_id).get_json()

    resp = client.post(f"/api/orders/{order['id']}/cancel", json={"reason": "not mine"})

    assert resp.status_code == 422
    assert resp.get_json()["error"] == "VALIDATION_ERROR"
    assert stock_of(product_id) == 2
    assert client.get(f"/api/orders/{order['id']}", headers=guest).get_json()["status"] == "pending"


def test_admin_routes_require_admin(client, database, guest):
    assert client.get("/admin/orders", headers=guest).status_code == 403
    assert client.get("/admin/orders", headers={"X-User-Id": "user-1"}).status_code == 403
    assert client.get("/admin/orders", headers=ADMIN).status_code == 200


def test_admin_fulfilment(client, make_product, guest):
    order = _place(client, guest, make_product()).get_json()
    order_id = order["id"]

    bad = client.post(f"/admin/orders/{order_id}/ship", json={"tracking_number": "1Z", "carrier_name": "UPS"}, headers=ADMIN)
    assert bad.status_code == 409

    for status in ("payment_processing", "paid", "processing"):
        resp = client.post(f"/admin/orders/{order_id}/status", json={"status": status}, headers=ADMIN)
        assert resp.status_code == 200

    shipped = client.post(
        f"/admin/orders/{order_id}/ship", json={"tracking_number": "1Z", "carrier_name": "UPS"}, headers=ADMIN
    )
    assert shipped.get_json()["status"] == "shipped"

    listing = client.get("/admin/orders?status=shipped", headers=ADMIN).get_json()
    assert [o["id"] for o in listing["orders"]] == [order_id]
    detail = client.get(f"/admin/orders/{order_id}", headers=ADMIN).get_json()
    assert detail["status_logs"][-1]["changed_by"] == "admin-1"


def test_admin_cancel_restocks(client, make_product, guest):
    product_id = make_product(stock=2)
    order = _place(client, guest, product_id, quantity=2).get_json()
    assert stock_of(product_id) == 0

    resp = client.post(f"/admin/orders/{order['id']}/cancel", json={"reason": "fraud check"}, headers=ADMIN)

    assert resp.get_json()["status"] == "cancelled"
    assert stock_of(product_id) == 2


def test_webhook_signature_failure_is_400(client, database):
    resp = client.post("/api/payments/webhook", data="{}", headers={"Stripe-Signature": "t=1,v1=deadbeef"})

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_SIGNATURE"


def test_failed_webhooks_are_listed_for_admins(client, make_product, guest, gateway):
    order = _place(client, guest, make_product()).get_json()
    intent = client.post("/api/payments/intent", json={"order_id": order["id"]}, headers=guest).get_json()
    client.post(f"/api/orders/{order['id']}/cancel", headers=guest)

    payload = gateway.build_event("payment_intent.succeeded", intent["intent_id"], event_id="evt_fail")
    ack = client.post("/api/payments/webhook", data=payload, headers={"Stripe-Signature": gateway.sign_payload(payload)})
    assert ack.status_code == 200
    assert ack.get_json()["processed"] is False

    failed = client.get("/admin/webhooks/failed", headers=ADMIN).get_json()
    assert [e["event_id"] for e in failed["events"]] == ["evt_fail"]


def test_payments_unavailable_is_503(config, database, guest):
    config.payment_provider = "stripe"
    client = create_app(config, identity_resolver=header_identity).test_client()

    resp = client.post("/api/payments/intent", json={"order_id": "missing"}, headers=guest)

    assert resp.status_code == 503
    assert resp.get_json()["error"] == "PAYMENTS_UNAVAILABLE"
