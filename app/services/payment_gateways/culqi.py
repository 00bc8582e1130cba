"""Адаптер Culqi (списание по токену карты, JSON API)."""
import logging

import httpx

from app.config import settings
from app.core.exceptions import GatewayError
from app.models.payment import PaymentProvider
from app.services.payment_gateways.base import (
    ChargeRequest,
    ChargeResult,
    ProviderStatus,
    RefundRequest,
    RefundResult,
    send_request,
    to_minor_units,
)

logger = logging.getLogger(__name__)

REFUND_REASONS = {"duplicidad", "fraudulento", "solicitud_comprador"}


class CulqiGateway:
    """Списания и возвраты через Culqi API v2."""

    provider = PaymentProvider.CULQI
    API_URL = "https://api.culqi.com/v2"

    APPROVED_OUTCOMES = {"venta_exitosa"}
    ACTION_CODES = {"REVIEW"}  # 3DS: нужна дополнительная аутентификация

    def __init__(
        self,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = settings.culqi_secret_key if secret_key is None else secret_key
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise GatewayError("Culqi is not configured", provider=self.provider.value)
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _error_message(result: dict, default: str) -> str:
        return result.get("user_message") or result.get("merchant_message") or default

    @staticmethod
    def _charge_status(result: dict) -> str:
        if result.get("action_code"):
            return str(result["action_code"])
        return (result.get("outcome") or {}).get("type", "")

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Создать списание.

        Сумма уходит в центах (187.59 PEN -> 18759).
        """
        payload = {
            "amount": to_minor_units(request.amount),
            "currency_code": request.currency,
            "email": request.email,
            "source_id": request.token,
            "description": request.description[:80],
            "metadata": request.metadata,
        }
        logger.info(f"Creating Culqi charge for {request.email}: {payload['amount']} {request.currency}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/charges",
            timeout=self.timeout,
            transport=self.transport,
            json=payload,
            headers=self._headers(),
        )

        if not response.is_success:
            logger.error(f"Culqi charge failed (HTTP {response.status_code}): {result}")
            raise GatewayError(self._error_message(result, "Payment failed"), provider=self.provider.value)

        status = self._charge_status(result)
        if not (self.is_approved(status) or self.requires_additional_action(status)):
            outcome = result.get("outcome") or {}
            raise GatewayError(
                outcome.get("user_message") or f"Payment {status or 'rejected'}",
                provider=self.provider.value,
            )

        charge_id = result.get("id")
        if not charge_id:
            raise GatewayError("Culqi response has no charge id", provider=self.provider.value)

        source = result.get("source") or {}
        iin = source.get("iin") or {}
        logger.info(f"Culqi charge created: {charge_id} ({status})")
        return ChargeResult(
            external_id=str(charge_id),
            status=status,
            raw=result,
            card_mask=source.get("card_number"),
            card_brand=iin.get("card_brand") or source.get("card_brand"),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        reason = request.reason if request.reason in REFUND_REASONS else "solicitud_comprador"
        payload = {
            "charge_id": request.external_id,
            "amount": to_minor_units(request.amount),
            "reason": reason,
        }
        logger.info(f"Creating Culqi refund for charge {request.external_id}: {payload['amount']}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/refunds",
            timeout=self.timeout,
            transport=self.transport,
            json=payload,
            headers=self._headers(),
        )

        if not response.is_success:
            logger.error(f"Culqi refund failed (HTTP {response.status_code}): {result}")
            raise GatewayError(self._error_message(result, "Refund failed"), provider=self.provider.value)

        logger.info(f"Culqi refund created: {result.get('id')}")
        return RefundResult(refund_id=str(result.get("id", "")), status="succeeded", raw=result)

    async def get_status(self, external_id: str) -> ProviderStatus:
        response, result = await send_request(
            self.provider,
            "GET",
            f"{self.API_URL}/charges/{external_id}",
            timeout=self.timeout,
            transport=self.transport,
            headers=self._headers(),
        )

        if not response.is_success:
            raise GatewayError(self._error_message(result, "Charge not found"), provider=self.provider.value)

        outcome = result.get("outcome") or {}
        return ProviderStatus(
            external_id=external_id,
            status=self._charge_status(result),
            raw=result,
            status_detail=outcome.get("user_message") or outcome.get("code"),
        )

    def is_approved(self, status: str) -> bool:
        return status in self.APPROVED_OUTCOMES

    def is_pending(self, status: str) -> bool:
        return False

    def requires_additional_action(self, status: str) -> bool:
        return status in self.ACTION_CODES
