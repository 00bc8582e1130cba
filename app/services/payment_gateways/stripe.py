"""Адаптер Stripe (PaymentIntent, form-encoded API)."""
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
    send_request,
    to_minor_units,
)

logger = logging.getLogger(__name__)


def card_details(intent: dict) -> dict:
    """Данные карты из latest_charge (expand) или из старого поля charges."""
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        charges = (intent.get("charges") or {}).get("data") or []
        charge = charges[0] if charges else {}
    return (charge.get("payment_method_details") or {}).get("card") or {}


class StripeGateway:
    """Оплата через PaymentIntent с немедленным подтверждением."""

    provider = PaymentProvider.STRIPE
    API_URL = "https://api.stripe.com/v1"

    SUCCEEDED_STATUSES = {"succeeded"}
    PENDING_STATUSES = {"processing"}
    ACTION_STATUSES = {"requires_action", "requires_confirmation"}

    def __init__(
        self,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    def _headers(self, idempotent: bool = False) -> dict[str, str]:
        if not self.secret_key:
            raise GatewayError("Stripe is not configured", provider=self.provider.value)
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotent:
            headers["Idempotency-Key"] = str(uuid.uuid4())
        return headers

    @staticmethod
    def _error_message(result: dict, default: str) -> str:
        return (result.get("error") or {}).get("message") or default

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        data: dict[str, str] = {
            "amount": str(to_minor_units(request.amount)),
            "currency": request.currency.lower(),
            "payment_method": request.token,
            "confirm": "true",
            "description": request.description,
            "receipt_email": request.email,
            "expand[]": "latest_charge",
        }
        if request.return_url:
            data["return_url"] = request.return_url
        else:
            # Без return_url Stripe требует запретить редиректы
            data["automatic_payment_methods[enabled]"] = "true"
            data["automatic_payment_methods[allow_redirects]"] = "never"
        for key, value in request.metadata.items():
            data[f"metadata[{key}]"] = str(value)

        logger.info(f"Creating Stripe PaymentIntent for {request.email}: {data['amount']} {request.currency}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/payment_intents",
            timeout=self.timeout,
            transport=self.transport,
            data=data,
            headers=self._headers(idempotent=True),
        )

        if not response.is_success:
            logger.error(f"Stripe payment failed (HTTP {response.status_code}): {self._error_message(result, '')}")
            raise GatewayError(self._error_message(result, "Payment failed"), provider=self.provider.value)

        status = result.get("status", "")
        if self.requires_additional_action(status):
            logger.warning(f"Stripe PaymentIntent {result.get('id')} requires additional action")
        elif not (self.is_approved(status) or self.is_pending(status)):
            last_error = result.get("last_payment_error") or {}
            raise GatewayError(
                last_error.get("message") or f"Payment failed with status: {status}",
                provider=self.provider.value,
            )

        card = card_details(result)
        logger.info(f"Stripe PaymentIntent created: {result.get('id')} ({status})")
        return ChargeResult(
            external_id=str(result["id"]),
            status=status,
            raw=result,
            card_mask=f"****{card['last4']}" if card.get("last4") else None,
            card_brand=card.get("brand"),
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        data: dict[str, str] = {
            "payment_intent": request.external_id,
            "amount": str(to_minor_units(request.amount)),
            "reason": "requested_by_customer",
        }
        if request.reason:
            data["metadata[reason]"] = request.reason

        logger.info(f"Creating Stripe refund for {request.external_id}: {data['amount']}")

        response, result = await send_request(
            self.provider,
            "POST",
            f"{self.API_URL}/refunds",
            timeout=self.timeout,
            transport=self.transport,
            data=data,
            headers=self._headers(idempotent=True),
        )

        if not response.is_success:
            logger.error(f"Stripe refund failed (HTTP {response.status_code}): {self._error_message(result, '')}")
            raise GatewayError(self._error_message(result, "Refund failed"), provider=self.provider.value)

        if result.get("status") in ("failed", "canceled"):
            raise GatewayError(result.get("failure_reason") or "Refund failed", provider=self.provider.value)

        logger.info(f"Stripe refund created: {result.get('id')}")
        return RefundResult(refund_id=str(result.get("id", "")), status=result.get("status", ""), raw=result)

    async def get_status(self, external_id: str) -> ProviderStatus:
        response, result = await send_request(
            self.provider,
            "GET",
            f"{self.API_URL}/payment_intents/{external_id}",
            timeout=self.timeout,
            transport=self.transport,
            headers=self._headers(),
        )

        if not response.is_success:
            raise GatewayError(self._error_message(result, "PaymentIntent not found"), provider=self.provider.value)

        last_error = result.get("last_payment_error") or {}
        return ProviderStatus(
            external_id=str(result.get("id", external_id)),
            status=result.get("status", ""),
            raw=result,
            status_detail=last_error.get("message"),
        )

    def is_approved(self, status: str) -> bool:
        return status in self.SUCCEEDED_STATUSES

    def is_pending(self, status: str) -> bool:
        return status in self.PENDING_STATUSES

    def requires_additional_action(self, status: str) -> bool:
        return status in self.ACTION_STATUSES
