"""Адаптер MercadoPago (платежи по токену, уведомления в стиле IPN)."""
import logging
import uuid

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
    from_minor_units,
    send_request,
    to_minor_units,
)

logger = logging.getLogger(__name__)

REJECTION_MESSAGES = {
    "cc_rejected_bad_filled_card_number": "Invalid card number",
    "cc_rejected_bad_filled_date": "Invalid expiration date",
    "cc_rejected_bad_filled_other": "Invalid card data",
    "cc_rejected_bad_filled_security_code": "Invalid security code",
    "cc_rejected_blacklist": "Card not allowed",
    "cc_rejected_call_for_authorize": "Call to authorize payment",
    "cc_rejected_card_disabled": "Card disabled",
    "cc_rejected_duplicated_payment": "Duplicated payment",
    "cc_rejected_high_risk": "Payment rejected by fraud prevention",
    "cc_rejected_insufficient_amount": "Insufficient funds",
    "cc_rejected_invalid_installments": "Invalid installments",
    "cc_rejected_max_attempts": "Maximum attempts exceeded",
    "cc_rejected_other_reason": "Payment rejected",
}


def rejection_message(status_detail: str | None) -> str:
    return REJECTION_MESSAGES.get(status_detail or "", "Payment rejected")


def wire_amount(amount) -> float:
    """MercadoPago принимает сумму в основных единицах; нормализуем через центы."""
    return float(from_minor_units(to_minor_units(amount)))


class MercadoPagoGateway:
    """Платежи и возвраты через MercadoPago API v1."""

    provider = PaymentProvider.MERCADOPAGO
    API_URL = "https://api.mercadopago.com/v1"

    APPROVED_STATUSES = {"approved"}
    PENDING_STATUSES = {"pending", "in_process", "authorized"}

    def __init__(
        self,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = settings.mercadopago_access_token if access_token is None else access_token
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    def _headers(self, idempotent: bool = False) -> dict[str, str]:
        if not self.access_token:
            raise GatewayError("MercadoPago is not configured", provider=self.provider.value)
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if idempotent:
            headers["X-Idempotency-Key"] = str(uuid.uuid4())
        return headers

    @staticmethod
    def _error_message(result: dict, default: str) -> str:
        if result.get("message"):
            return result["message"]
        cause = result.get("cause") or []
        descriptions = [c.get("description") for c in cause if isinstance(c, dict) and c.get("description")]
        return ", ".join(descriptions) or default

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        payer: dict = {"email": request.email}
        if request.identification:
            payer["identification"] = request.identification

        payload = {
            "transaction_amount": wire_amount(request.amount),
            "token": request.token,
            "description": request.description,
            "installments": request.installments or 1,
            "payment_method_id": request.payment_method_id or "visa",
            "payer": payer,
            "external_reference": request.metadata.get("order_number"),
            "metadata": request.metadata,
        }
        logger.info(f"Creating MercadoPago payment for {request.email}: {payload['transaction_amount']} {request.currency}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/payments",
            timeout=self.timeout,
            transport=self.transport,
            json=payload,
            headers=self._headers(idempotent=True),
        )

        if not response.is_success:
            logger.error(f"MercadoPago payment failed (HTTP {response.status_code}): {result}")
            raise GatewayError(self._error_message(result, "Payment failed"), provider=self.provider.value)

        status = result.get("status", "")
        if status == "rejected":
            raise GatewayError(rejection_message(result.get("status_detail")), provider=self.provider.value)
        if not (self.is_approved(status) or self.is_pending(status)):
            raise GatewayError(
                f"Payment {status}: {result.get('status_detail') or 'unknown'}",
                provider=self.provider.value,
            )

        card = result.get("card") or {}
        card_mask = None
        if card.get("last_four_digits"):
            card_mask = f"{card.get('first_six_digits', '')}******{card['last_four_digits']}"

        logger.info(f"MercadoPago payment created: {result.get('id')} ({status})")
        return ChargeResult(
            external_id=str(result["id"]),
            status=status,
            raw=result,
            card_mask=card_mask,
            card_brand=result.get("payment_method_id"),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        # Полный возврат - пустое тело, частичный - сумма
        payload = {} if request.full_refund else {"amount": wire_amount(request.amount)}
        logger.info(f"Creating MercadoPago refund for payment {request.external_id}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/payments/{request.external_id}/refunds",
            timeout=self.timeout,
            transport=self.transport,
            json=payload,
            headers=self._headers(idempotent=True),
        )

        if not response.is_success:
            logger.error(f"MercadoPago refund failed (HTTP {response.status_code}): {result}")
            raise GatewayError(self._error_message(result, "Refund failed"), provider=self.provider.value)

        logger.info(f"MercadoPago refund created: {result.get('id')}")
        return RefundResult(refund_id=str(result.get("id", "")), status=result.get("status", "approved"), raw=result)

    async def get_status(self, external_id: str) -> ProviderStatus:
        response, result = await send_request(
            self.provider,
            "GET",
            f"{self.API_URL}/payments/{external_id}",
            timeout=self.timeout,
            transport=self.transport,
            headers=self._headers(),
        )

        if not response.is_success:
            raise GatewayError(self._error_message(result, "Payment not found"), provider=self.provider.value)

        return ProviderStatus(
            external_id=str(result.get("id", external_id)),
            status=result.get("status", ""),
            raw=result,
            status_detail=result.get("status_detail"),
        )

    def is_approved(self, status: str) -> bool:
        return status in self.APPROVED_STATUSES

    def is_pending(self, status: str) -> bool:
        return status in self.PENDING_STATUSES

    def requires_additional_action(self, status: str) -> bool:
        return False
