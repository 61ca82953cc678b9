"""HTTP tests for the promo code, order and Razorpay endpoints."""

import json
from datetime import datetime, timedelta

from backend.payments import compute_signature

from .conftest import KEY_SECRET, WEBHOOK_SECRET, make_token


def seed_promo(fake_db, **overrides):
    document = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": 10,
        "applicable_to": "all",
        "product_ids": [],
        "min_purchase": 0,
        "max_discount": None,
        "valid_from": datetime.utcnow() - timedelta(days=1),
        "valid_until": datetime.utcnow() + timedelta(days=1),
        "usage_limit": None,
        "used_count": 0,
        "is_active": True,
    }
    document.update(overrides)
    fake_db.promo_codes.insert_one(document)
    return document


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["mongodb"]["status"] == "connected"
    assert body["environment"]["paymentsConfigured"] is True


# Promo codes


def test_validate_promo_code(client, fake_db):
    seed_promo(fake_db)
    response = client.post(
        "/api/promo-code/validate",
        json={"code": " save10 ", "items": [{"id": 1, "quantity": 1}], "subtotal": 1000},
    )
    assert response.status_code == 200
    assert response.get_json() == {
        "valid": True,
        "discount": 100,
        "discountType": "percentage",
        "discountValue": 10,
    }


def test_validate_unknown_promo_code(client):
    response = client.post("/api/promo-code/validate", json={"code": "NOPE", "subtotal": 100})
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid promo code", "reason": "NotFound"}


def test_validate_expired_promo_code(client, fake_db):
    seed_promo(fake_db, valid_until=datetime.utcnow() - timedelta(minutes=1))
    response = client.post("/api/promo-code/validate", json={"code": "SAVE10", "subtotal": 100})
    assert response.status_code == 400
    assert response.get_json()["reason"] == "Expired"


def test_validate_promo_code_requires_code_and_subtotal(client):
    assert client.post("/api/promo-code/validate", json={"subtotal": 10}).status_code == 400
    response = client.post("/api/promo-code/validate", json={"code": "X", "subtotal": "lots"})
    assert response.status_code == 400


def test_misconfigured_promo_code_is_treated_as_unknown(client, fake_db):
    seed_promo(fake_db, discount_type="bogus")
    response = client.post("/api/promo-code/validate", json={"code": "SAVE10", "subtotal": 100})
    assert response.status_code == 400
    assert response.get_json()["reason"] == "NotFound"


def test_admin_promo_code_management(client, fake_db, admin_headers, auth_headers):
    payload = {"code": "welcome", "discountType": "fixed", "discountValue": 50}

    assert client.post("/api/admin/promo-codes", json=payload, headers=auth_headers).status_code == 403

    created = client.post("/api/admin/promo-codes", json=payload, headers=admin_headers)
    assert created.status_code == 200
    assert created.get_json()["code"] == "WELCOME"

    duplicate = client.post("/api/admin/promo-codes", json=payload, headers=admin_headers)
    assert duplicate.status_code == 400

    invalid = client.post(
        "/api/admin/promo-codes",
        json={"code": "BAD", "discountType": "bogus", "discountValue": 5},
        headers=admin_headers,
    )
    assert invalid.status_code == 400


# Orders


def test_create_order_applies_promo_code(client, fake_db, auth_headers):
    seed_promo(fake_db)
    response = client.post(
        "/api/orders",
        json={
            "items": [{"productId": "7", "quantity": 2, "unitPrice": 500, "category": "Rings"}],
            "promoCode": "save10",
            "payment": "razorpay",
        },
        headers=auth_headers,
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["subtotal"] == 1000
    assert body["discount"] == 100
    assert body["total"] == 900
    assert (body["status"], body["paymentStatus"]) == ("Pending", "Pending")
    assert body["items"][0]["lineTotal"] == 1000


def test_create_order_rejects_invalid_promo_code(client, auth_headers):
    response = client.post(
        "/api/orders",
        json={"items": [{"productId": "7", "unitPrice": 500}], "promoCode": "NOPE"},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.get_json()["reason"] == "NotFound"


def test_update_order_cannot_touch_payment_state(client, fake_db, auth_headers, pending_order):
    response = client.put(
        f"/api/orders/{pending_order['_id']}",
        json={"status": "Completed", "paymentStatus": "Success", "payment": "upi"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert stored["payment"] == "upi"
    assert (stored["status"], stored["payment_status"]) == ("Pending", "Pending")


# Razorpay payments


def test_payment_routes_require_token(client):
    response = client.post("/api/payments/razorpay/create-order", json={})
    assert response.status_code == 401
    assert response.get_json() == {"error": "No token provided"}


def test_create_razorpay_order(client, fake_db, gateway, auth_headers, pending_order):
    response = client.post(
        "/api/payments/razorpay/create-order",
        json={"orderId": str(pending_order["_id"]), "amount": 1000},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.get_json() == {
        "success": True,
        "orderId": "order_GW1",
        "amount": 100000,
        "currency": "INR",
        "keyId": "rzp_test_1234567890",
    }
    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert stored["gateway_order_id"] == "order_GW1"


def test_create_razorpay_order_for_missing_order(client, auth_headers):
    response = client.post(
        "/api/payments/razorpay/create-order",
        json={"orderId": "64b000000000000000000000", "amount": 10},
        headers=auth_headers,
    )
    assert response.status_code == 404
    assert response.get_json() == {"error": "Order not found", "success": False}


def test_verify_razorpay_payment(client, fake_db, auth_headers, pending_order):
    fake_db.orders.update_one(
        {"_id": pending_order["_id"]}, {"$set": {"gateway_order_id": "order_GW1"}}
    )
    signature = compute_signature(KEY_SECRET, "order_GW1|pay_1")
    response = client.post(
        "/api/payments/razorpay/verify",
        json={
            "orderId": str(pending_order["_id"]),
            "razorpayOrderId": "order_GW1",
            "razorpayPaymentId": "pay_1",
            "razorpaySignature": signature,
        },
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.get_json()["message"] == "Payment verified successfully"
    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert (stored["status"], stored["payment_status"]) == ("Processing", "Success")


def test_verify_razorpay_payment_with_bad_signature(client, fake_db, auth_headers, pending_order):
    response = client.post(
        "/api/payments/razorpay/verify",
        json={
            "orderId": str(pending_order["_id"]),
            "gatewayOrderId": "order_GW1",
            "gatewayPaymentId": "pay_1",
            "signature": "0" * 64,
        },
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.get_json() == {
        "error": "Invalid payment signature",
        "success": False,
        "reason": "InvalidSignature",
    }
    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert (stored["status"], stored["payment_status"]) == ("Failed", "Failed")


def post_webhook(client, event, signature=None):
    body = json.dumps(event).encode("utf-8")
    if signature is None:
        signature = compute_signature(WEBHOOK_SECRET, body)
    return client.post(
        "/api/payments/razorpay/webhook",
        data=body,
        content_type="application/json",
        headers={"X-Razorpay-Signature": signature},
    )


def test_webhook_captures_payment(client, fake_db, pending_order):
    fake_db.orders.update_one(
        {"_id": pending_order["_id"]}, {"$set": {"gateway_order_id": "order_GW1"}}
    )
    event = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_GW1"}}},
    }
    response = post_webhook(client, event)
    assert response.status_code == 200
    assert response.get_json() == {"success": True}

    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert stored["payment_status"] == "Success"
    assert stored["gateway_payment_id"] == "pay_9"


def test_webhook_rejects_bad_signature(client, fake_db, pending_order):
    fake_db.orders.update_one(
        {"_id": pending_order["_id"]}, {"$set": {"gateway_order_id": "order_GW1"}}
    )
    event = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_GW1"}}},
    }
    response = post_webhook(client, event, signature="forged")
    assert response.status_code == 400
    assert response.get_json()["reason"] == "InvalidSignature"
    assert fake_db.orders.find_one({"_id": pending_order["_id"]})["payment_status"] == "Pending"


def test_payment_status(client, fake_db, gateway, auth_headers, pending_order):
    fake_db.orders.update_one(
        {"_id": pending_order["_id"]}, {"$set": {"gateway_order_id": "order_GW1"}}
    )
    response = client.get(
        f"/api/payments/razorpay/status/{pending_order['_id']}", headers=auth_headers
    )
    assert response.status_code == 200
    body = response.get_json()
    assert (body["paymentStatus"], body["orderStatus"]) == ("Success", "Processing")
    assert body["gatewayOrder"]["id"] == "order_GW1"


def test_payment_status_hides_other_users_orders(client, fake_db, pending_order, admin):
    headers = {"Authorization": f"Bearer {make_token(client.application, admin)}"}
    response = client.get(f"/api/payments/razorpay/status/{pending_order['_id']}", headers=headers)
    assert response.status_code == 404


def test_create_razorpay_order_for_paid_order(
    client, fake_db, gateway, auth_headers, pending_order
):
    paid = {"status": "Processing", "payment_status": "Success", "gateway_order_id": "order_OLD"}
    fake_db.orders.update_one({"_id": pending_order["_id"]}, {"$set": paid})
    response = client.post(
        "/api/payments/razorpay/create-order",
        json={"orderId": str(pending_order["_id"]), "amount": 1000},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.get_json()["reason"] == "OrderSettled"
    assert gateway.calls == []
    stored = fake_db.orders.find_one({"_id": pending_order["_id"]})
    assert (stored["status"], stored["payment_status"]) == ("Processing", "Success")
    assert stored["gateway_order_id"] == "order_OLD"
