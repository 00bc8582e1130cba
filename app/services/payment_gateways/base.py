"""
Общий контракт платежных шлюзов.

Каждый адаптер (Culqi, MercadoPago, Stripe) реализует протокол PaymentGateway
самостоятельно, без общего базового класса. Здесь только типы запросов и
ответов, перевод сумм в минимальные единицы и обертка над httpx.
"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Protocol

import httpx

from app.core.exceptions import GatewayError
from app.models.payment import PaymentProvider, PaymentStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_minor_units(amount: Decimal | float | int | str) -> int:
    """Сумма в основных единицах -> целые центы (округление half-up)."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    """Целые центы -> сумма в основных единицах с двумя знаками."""
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass
class ChargeRequest:
    """Запрос на списание в каноническом виде."""

    amount: Decimal
    currency: str
    token: str
    email: str
    description: str
    metadata: dict[str, str] = field(default_factory=dict)
    installments: int = 1
    payment_method_id: str | None = None  # MercadoPago: visa / master / ...
    identification: dict[str, str] | None = None  # MercadoPago: {"type": "DNI", "number": "..."}
    return_url: str | None = None  # Stripe: возврат после 3DS


@dataclass
class ChargeResult:
    external_id: str
    status: str  # Статус в терминах провайдера
    raw: dict[str, Any]
    card_mask: str | None = None
    card_brand: str | None = None


@dataclass
class RefundRequest:
    external_id: str
    amount: Decimal
    currency: str
    full_refund: bool = True
    reason: str | None = None


@dataclass
class RefundResult:
    refund_id: str
    status: str
    raw: dict[str, Any]


@dataclass
class ProviderStatus:
    external_id: str
    status: str
    raw: dict[str, Any]
    status_detail: str | None = None


class PaymentGateway(Protocol):
    """Возможности, которые оркестратор ожидает от любого шлюза."""

    provider: PaymentProvider

    async def charge(self, request: ChargeRequest) -> ChargeResult: ...

    async def refund(self, request: RefundRequest) -> RefundResult: ...

    async def get_status(self, external_id: str) -> ProviderStatus: ...

    def is_approved(self, status: str) -> bool: ...

    def is_pending(self, status: str) -> bool: ...

    def requires_additional_action(self, status: str) -> bool: ...


def classify_status(gateway: PaymentGateway, status: str) -> PaymentStatus:
    """approved -> COMPLETED, pending / requires action -> PENDING, иначе FAILED."""
    if gateway.is_approved(status):
        return PaymentStatus.COMPLETED
    if gateway.is_pending(status) or gateway.requires_additional_action(status):
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


async def send_request(
    provider: PaymentProvider,
    method: str,
    url: str,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs: Any,
) -> tuple[httpx.Response, dict[str, Any]]:
    """
    Ровно один HTTP запрос к провайдеру, без повторов.

    Сетевые ошибки, таймауты и невалидный JSON превращаются в GatewayError.
    Проверку статуса ответа делает адаптер: у каждого провайдера свой формат ошибки.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.error(f"{provider.value} request timed out: {method} {url}: {e!r}")
        raise GatewayError("Payment provider did not respond in time", provider=provider.value) from e
    except httpx.HTTPError as e:
        logger.error(f"{provider.value} transport error: {method} {url}: {e!r}")
        raise GatewayError("Payment processing error", provider=provider.value) from e

    try:
        body = response.json() if response.content else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"{provider.value} returned non-JSON body (HTTP {response.status_code})")
        raise GatewayError("Invalid response from payment provider", provider=provider.value) from e

    if not isinstance(body, dict):
        raise GatewayError("Invalid response from payment provider", provider=provider.value)

    return response, body
