import json
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import GatewayError
from app.models.payment import PaymentStatus
from app.services.payment_gateways import ChargeRequest, CulqiGateway, RefundRequest, classify_status

pytestmark = pytest.mark.asyncio


def make_gateway(handler) -> CulqiGateway:
    return CulqiGateway(secret_key="sk_test_culqi", timeout=5, transport=httpx.MockTransport(handler))


def charge_request(amount: str = "118.00") -> ChargeRequest:
    return ChargeRequest(
        amount=Decimal(amount),
        currency="PEN",
        token="tkn_test_123",
        email="ana@example.com",
        description="Orden ORD-1",
        metadata={"order_number": "ORD-1"},
    )


async def test_charge_sends_cents_and_maps_card():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "id": "chr_test_1",
                "outcome": {"type": "venta_exitosa"},
                "source": {"card_number": "411111******1111", "iin": {"card_brand": "Visa"}},
            },
        )

    gateway = make_gateway(handler)
    result = await gateway.charge(charge_request())

    assert seen["url"] == "https://api.culqi.com/v2/charges"
    assert seen["auth"] == "Bearer sk_test_culqi"
    assert seen["body"]["amount"] == 11800
    assert seen["body"]["currency_code"] == "PEN"
    assert seen["body"]["source_id"] == "tkn_test_123"
    assert result.external_id == "chr_test_1"
    assert result.card_mask == "411111******1111"
    assert result.card_brand == "Visa"
    assert classify_status(gateway, result.status) == PaymentStatus.COMPLETED


async def test_decline_raises_provider_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            402,
            json={"object": "error", "type": "card_error", "user_message": "Su tarjeta no tiene fondos suficientes."},
        )

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(handler).charge(charge_request())

    assert exc_info.value.message == "Su tarjeta no tiene fondos suficientes."
    assert exc_info.value.provider == "culqi"
    assert exc_info.value.status_code == 402


async def test_review_action_code_is_pending():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "chr_test_2", "action_code": "REVIEW"})

    gateway = make_gateway(handler)
    result = await gateway.charge(charge_request())

    assert gateway.requires_additional_action(result.status)
    assert classify_status(gateway, result.status) == PaymentStatus.PENDING


async def test_partial_refund_in_cents_with_default_reason():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "ref_1", "amount": 5000})

    result = await make_gateway(handler).refund(
        RefundRequest(external_id="chr_test_1", amount=Decimal("50.00"), currency="PEN", full_refund=False, reason="otro")
    )

    assert seen["url"] == "https://api.culqi.com/v2/refunds"
    assert seen["body"] == {"charge_id": "chr_test_1", "amount": 5000, "reason": "solicitud_comprador"}
    assert result.refund_id == "ref_1"


async def test_timeout_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(handler).charge(charge_request())

    assert exc_info.value.message == "Payment provider did not respond in time"


async def test_non_json_response_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad gateway</html>")

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(handler).charge(charge_request())

    assert exc_info.value.message == "Invalid response from payment provider"


async def test_missing_secret_key_fails_without_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = CulqiGateway(secret_key="", transport=httpx.MockTransport(handler))
    with pytest.raises(GatewayError, match="not configured"):
        await gateway.charge(charge_request())
    assert calls == []


async def test_get_status_reads_outcome():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/charges/chr_test_1"
        return httpx.Response(
            200,
            json={"id": "chr_test_1", "outcome": {"type": "venta_exitosa", "user_message": "Su compra ha sido exitosa."}},
        )

    status = await make_gateway(handler).get_status("chr_test_1")

    assert status.status == "venta_exitosa"
    assert status.status_detail == "Su compra ha sido exitosa."
