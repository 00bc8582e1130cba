import hashlib
import hmac
import json
import uuid

import pytest

from app.core.exceptions import GatewayError
from app.models import OrderStatus, PaymentProvider, PaymentStatus
from tests.conftest import auth_headers, create_order, create_payment, create_user

pytestmark = pytest.mark.asyncio


def payment_body(order, **overrides) -> dict:
    body = {
        "order_id": str(order.id),
        "provider": "culqi",
        "method": "credit_card",
        "token": "tkn_test_123",
        "email": "ana@example.com",
    }
    body.update(overrides)
    return body


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_create_payment(client, db, notifier):
    user = await create_user(db)
    order = await create_order(db, user, total="118.00")

    response = await client.post("/api/v1/payments", json=payment_body(order), headers=auth_headers(user))

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "completed"
    assert data["order_id"] == str(order.id)
    assert data["amount"] == "118.00"
    assert data["card_mask"] == "411111******1111"
    assert "provider_response" not in data
    assert len(notifier.notifications) == 1


async def test_create_payment_requires_token(client, db):
    user = await create_user(db)
    order = await create_order(db, user)

    response = await client.post("/api/v1/payments", json=payment_body(order))

    assert response.status_code in (401, 403)


async def test_declined_payment_returns_402(client, db, gateways):
    gateways[PaymentProvider.CULQI].charge_error = GatewayError("Insufficient funds", provider="culqi")
    user = await create_user(db)
    order = await create_order(db, user)

    response = await client.post("/api/v1/payments", json=payment_body(order), headers=auth_headers(user))

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["message"] == "Insufficient funds"
    assert error["code"] == "PAYMENT_FAILED"
    assert error["details"] == {"provider": "culqi"}


async def test_second_payment_conflicts(client, db, gateways):
    user = await create_user(db)
    order = await create_order(db, user)
    await create_payment(db, order, status=PaymentStatus.COMPLETED)

    response = await client.post("/api/v1/payments", json=payment_body(order), headers=auth_headers(user))

    assert response.status_code == 409
    assert gateways[PaymentProvider.CULQI].charges == []


async def test_unpayable_order_returns_400(client, db):
    user = await create_user(db)
    order = await create_order(db, user, status=OrderStatus.SHIPPED)

    response = await client.post("/api/v1/payments", json=payment_body(order), headers=auth_headers(user))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_STATE"


async def test_validation_error_format(client, db):
    user = await create_user(db)
    order = await create_order(db, user)

    response = await client.post(
        "/api/v1/payments",
        json=payment_body(order, provider="paypal"),
        headers=auth_headers(user),
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_payment_visibility(client, db):
    owner = await create_user(db)
    stranger = await create_user(db)
    admin = await create_user(db, role="admin")
    order = await create_order(db, owner)
    payment = await create_payment(db, order)

    assert (await client.get(f"/api/v1/payments/{payment.id}", headers=auth_headers(owner))).status_code == 200
    assert (await client.get(f"/api/v1/payments/{payment.id}", headers=auth_headers(stranger))).status_code == 404
    assert (await client.get(f"/api/v1/payments/{payment.id}", headers=auth_headers(admin))).status_code == 200
    assert (await client.get(f"/api/v1/payments/{uuid.uuid4()}", headers=auth_headers(admin))).status_code == 404


async def test_list_endpoints(client, db):
    owner = await create_user(db)
    other = await create_user(db)
    admin = await create_user(db, role="admin")
    order = await create_order(db, owner)
    await create_payment(db, order, external_id="mine")
    await create_payment(db, await create_order(db, other), external_id="theirs")

    mine = await client.get("/api/v1/payments", headers=auth_headers(owner))
    by_order = await client.get(f"/api/v1/payments/order/{order.id}", headers=auth_headers(owner))
    foreign_order = await client.get(f"/api/v1/payments/order/{order.id}", headers=auth_headers(other))
    everything = await client.get("/api/v1/payments/admin/all", headers=auth_headers(admin))
    forbidden = await client.get("/api/v1/payments/admin/all", headers=auth_headers(owner))

    assert [p["external_id"] for p in mine.json()] == ["mine"]
    assert [p["external_id"] for p in by_order.json()] == ["mine"]
    assert foreign_order.json() == []
    assert len(everything.json()) == 2
    assert forbidden.status_code == 403


async def test_admin_refund(client, db, gateways):
    user = await create_user(db)
    admin = await create_user(db, role="admin")
    order = await create_order(db, user, total="100.00", status=OrderStatus.PAID)
    payment = await create_payment(db, order, status=PaymentStatus.COMPLETED)

    customer_attempt = await client.post(f"/api/v1/payments/{payment.id}/refund", headers=auth_headers(user))
    response = await client.post(
        f"/api/v1/payments/{payment.id}/refund",
        json={"amount": "50.00", "reason": "solicitud_comprador"},
        headers=auth_headers(admin),
    )

    assert customer_attempt.status_code == 403
    assert response.status_code == 200
    assert response.json()["status"] == "refunded"
    assert response.json()["refund_amount"] == "50.00"
    assert len(gateways[PaymentProvider.CULQI].refunds) == 1


async def test_refund_of_unfinished_payment(client, db, gateways):
    admin = await create_user(db, role="admin")
    order = await create_order(db, admin)
    payment = await create_payment(db, order, status=PaymentStatus.PROCESSING)

    response = await client.post(f"/api/v1/payments/{payment.id}/refund", headers=auth_headers(admin))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_STATE"
    assert gateways[PaymentProvider.CULQI].refunds == []


async def test_admin_sync(client, db, gateways):
    admin = await create_user(db, role="admin")
    order = await create_order(db, admin)
    payment = await create_payment(db, order, status=PaymentStatus.PENDING, external_id="ext_pending")

    response = await client.post(f"/api/v1/payments/{payment.id}/sync", headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert gateways[PaymentProvider.CULQI].status_checks == ["ext_pending"]


async def test_culqi_webhook_endpoint(client, db):
    user = await create_user(db)
    order = await create_order(db, user)
    await create_payment(db, order, external_id="chr_hook")
    body = json.dumps({"id": "evt_9", "type": "charge.creation.succeeded", "data": {"id": "chr_hook"}}).encode()
    signature = hmac.new(b"culqi-test-secret", body, hashlib.sha256).hexdigest()

    response = await client.post(
        "/api/v1/payments/webhooks/culqi",
        content=body,
        headers={"X-Culqi-Signature": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["eventId"] == "evt_9"
    assert data["eventType"] == "charge.creation.succeeded"


async def test_webhook_bad_signature_returns_401(client):
    body = json.dumps({"id": "evt_9", "type": "charge.creation.succeeded", "data": {"id": "chr_hook"}}).encode()

    response = await client.post(
        "/api/v1/payments/webhooks/culqi",
        content=body,
        headers={"X-Culqi-Signature": "bad", "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "message": "Invalid webhook signature",
        "eventId": None,
        "eventType": None,
    }


async def test_webhook_unparseable_body_returns_400(client):
    body = b"{broken"
    signature = hmac.new(b"culqi-test-secret", body, hashlib.sha256).hexdigest()

    response = await client.post(
        "/api/v1/payments/webhooks/culqi",
        content=body,
        headers={"X-Culqi-Signature": signature},
    )

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["message"] == "Invalid webhook payload"


async def test_mercadopago_webhook_with_provider_outage_is_acknowledged(client, db, gateways):
    async def unavailable(external_id):
        raise GatewayError("Payment provider did not respond in time", provider="mercadopago")

    gateways[PaymentProvider.MERCADOPAGO].get_status = unavailable
    user = await create_user(db)
    order = await create_order(db, user)
    await create_payment(db, order, provider=PaymentProvider.MERCADOPAGO, external_id="123456")
    body = json.dumps({"id": 77, "type": "payment", "action": "payment.updated", "data": {"id": "123456"}}).encode()
    manifest = b"id:123456;request-id:req-1;ts:1700000000;"
    x_signature = f"ts=1700000000,v1={hmac.new(b'mp-test-secret', manifest, hashlib.sha256).hexdigest()}"

    response = await client.post(
        "/api/v1/payments/webhooks/mercadopago",
        content=body,
        headers={"X-Signature": x_signature, "X-Request-Id": "req-1", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["eventId"] == "77"
