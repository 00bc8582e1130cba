"""
Прием webhook от платежных шлюзов.

Подпись проверяется до любого обращения к БД. Событие провайдера
приводится к WebhookEvent и применяется тем же переходом, что и
синхронный ответ шлюза.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import AppError, AuthenticationError, ConflictError, GatewayError, InvalidStateError
from app.core.security import hmac_sha256_hex, parse_signature_header, signatures_match
from app.models.payment import PaymentProvider, PaymentStatus
from app.services.notification_service import Notifier
from app.services.payment_gateways import PaymentGateway, from_minor_units
from app.services.payment_gateways.mercadopago import rejection_message
from app.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class WebhookCategory(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PENDING = "pending"


CATEGORY_TARGETS = {
    WebhookCategory.SUCCEEDED: PaymentStatus.COMPLETED,
    WebhookCategory.FAILED: PaymentStatus.FAILED,
    WebhookCategory.REFUNDED: PaymentStatus.REFUNDED,
    WebhookCategory.PENDING: PaymentStatus.PENDING,
}


@dataclass
class WebhookEvent:
    """Событие провайдера в каноническом виде."""

    provider: PaymentProvider
    external_id: str
    category: WebhookCategory
    event_type: str
    event_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    refund_amount: Decimal | None = None


class WebhookResult(BaseModel):
    """Ответ шлюзу. 200 означает "больше не присылать"."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    event_id: str | None = Field(None, alias="eventId")
    event_type: str | None = Field(None, alias="eventType")


# ==================== ПОДПИСИ ====================


def verify_culqi_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """X-Culqi-Signature: hex HMAC-SHA256 от сырого тела."""
    return signatures_match(hmac_sha256_hex(secret, body), signature)


def verify_mercadopago_signature(
    x_signature: str | None,
    x_request_id: str | None,
    data_id: str,
    secret: str,
) -> bool:
    """x-signature: ts=<ts>,v1=<hex>; подписывается манифест, а не тело."""
    if not x_signature or not x_request_id:
        return False

    parts = parse_signature_header(x_signature)
    timestamps = parts.get("ts")
    signatures = parts.get("v1")
    if not timestamps or not signatures:
        return False

    manifest = f"id:{data_id};request-id:{x_request_id};ts:{timestamps[0]};"
    return signatures_match(hmac_sha256_hex(secret, manifest), signatures[0])


def verify_stripe_signature(
    body: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    """
    Stripe-Signature: t=<ts>,v1=<hex>[,v1=<hex>].

    Подписывается строка "<t>.<тело>"; подходит любая из v1 (ротация ключей).
    Событие старше tolerance секунд отклоняется.
    """
    if not header:
        return False

    parts = parse_signature_header(header)
    timestamps = parts.get("t")
    signatures = parts.get("v1")
    if not timestamps or not signatures:
        return False

    try:
        timestamp = int(timestamps[0])
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        return False

    expected = hmac_sha256_hex(secret, timestamps[0].encode("utf-8") + b"." + body)
    return any(signatures_match(expected, signature) for signature in signatures)


def parse_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise AppError("Invalid webhook payload", code="BAD_REQUEST", status_code=400)
    if not isinstance(payload, dict):
        raise AppError("Invalid webhook payload", code="BAD_REQUEST", status_code=400)
    return payload


# ==================== НОРМАЛИЗАЦИЯ ====================


def normalize_culqi_event(payload: dict[str, Any]) -> WebhookEvent | None:
    event_type = payload.get("type", "")
    data = payload.get("data") or {}
    # Culqi иногда присылает объект строкой JSON
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            data = {}
    if not isinstance(data, dict):
        data = {}

    error_message = None
    refund_amount = None
    if event_type == "charge.creation.succeeded":
        category = WebhookCategory.SUCCEEDED
        external_id = data.get("id")
    elif event_type == "charge.creation.failed":
        category = WebhookCategory.FAILED
        external_id = data.get("id")
        outcome = data.get("outcome") or {}
        error_message = outcome.get("user_message") or outcome.get("code") or "Payment failed"
    elif event_type == "refund.creation.succeeded":
        category = WebhookCategory.REFUNDED
        external_id = data.get("charge_id")
        if isinstance(data.get("amount"), int):
            refund_amount = from_minor_units(data["amount"])
    else:
        return None

    if not external_id:
        return None

    return WebhookEvent(
        provider=PaymentProvider.CULQI,
        external_id=str(external_id),
        category=category,
        event_type=event_type,
        event_id=payload.get("id"),
        raw=payload,
        error_message=error_message,
        refund_amount=refund_amount,
    )


STRIPE_CATEGORIES = {
    "payment_intent.succeeded": WebhookCategory.SUCCEEDED,
    "charge.succeeded": WebhookCategory.SUCCEEDED,
    "payment_intent.payment_failed": WebhookCategory.FAILED,
    "charge.refunded": WebhookCategory.REFUNDED,
}


def normalize_stripe_event(payload: dict[str, Any]) -> WebhookEvent | None:
    event_type = payload.get("type", "")
    category = STRIPE_CATEGORIES.get(event_type)
    if category is None:
        return None

    obj = (payload.get("data") or {}).get("object") or {}
    # У charge ссылка на PaymentIntent, у payment_intent это сам объект
    if obj.get("object") == "charge" or event_type.startswith("charge."):
        external_id = obj.get("payment_intent")
    else:
        external_id = obj.get("id")
    if not external_id:
        return None

    error_message = None
    if category == WebhookCategory.FAILED:
        error_message = (obj.get("last_payment_error") or {}).get("message") or "Payment failed"

    refund_amount = None
    if category == WebhookCategory.REFUNDED and isinstance(obj.get("amount_refunded"), int):
        refund_amount = from_minor_units(obj["amount_refunded"])

    return WebhookEvent(
        provider=PaymentProvider.STRIPE,
        external_id=str(external_id),
        category=category,
        event_type=event_type,
        event_id=payload.get("id"),
        raw=payload,
        error_message=error_message,
        refund_amount=refund_amount,
    )


def mercadopago_category(status: str) -> WebhookCategory | None:
    if status == "approved":
        return WebhookCategory.SUCCEEDED
    if status in ("rejected", "cancelled"):
        return WebhookCategory.FAILED
    if status in ("refunded", "charged_back"):
        return WebhookCategory.REFUNDED
    if status in ("pending", "in_process", "authorized"):
        return WebhookCategory.PENDING
    return None


# ==================== СЕРВИС ====================


class WebhookService:
    """Проверка подписи, нормализация и сверка событий с платежами."""

    def __init__(
        self,
        db: AsyncSession,
        gateways: dict[PaymentProvider, PaymentGateway] | None = None,
        notifier: Notifier | None = None,
        log: logging.Logger | None = None,
        secrets: dict[PaymentProvider, str] | None = None,
        environment: str | None = None,
        tolerance_seconds: int | None = None,
    ):
        self.logger = log or logger
        self.payments = PaymentService(db, gateways=gateways, notifier=notifier, log=self.logger)
        self.secrets = secrets if secrets is not None else {
            PaymentProvider.CULQI: settings.culqi_webhook_secret,
            PaymentProvider.MERCADOPAGO: settings.mercadopago_webhook_secret,
            PaymentProvider.STRIPE: settings.stripe_webhook_secret,
        }
        self.environment = environment or settings.environment
        self.tolerance_seconds = tolerance_seconds or settings.webhook_tolerance_seconds

    def _secret_for(self, provider: PaymentProvider) -> str | None:
        """
        Секрет провайдера или None, если проверку можно пропустить.

        Без секрета проверка пропускается только в development.
        """
        secret = self.secrets.get(provider)
        if secret:
            return secret
        if self.environment == "development":
            self.logger.warning(
                f"{provider.value} webhook secret is not configured, signature check skipped"
            )
            return None
        self.logger.error(f"{provider.value} webhook rejected: secret is not configured")
        raise AuthenticationError("Webhook secret is not configured")

    def _reject(self, provider: PaymentProvider) -> None:
        self.logger.warning(f"Invalid {provider.value} webhook signature")
        raise AuthenticationError("Invalid webhook signature")

    async def handle_culqi(self, body: bytes, signature: str | None) -> WebhookResult:
        secret = self._secret_for(PaymentProvider.CULQI)
        if secret and not verify_culqi_signature(body, signature, secret):
            self._reject(PaymentProvider.CULQI)

        payload = parse_payload(body)
        event = normalize_culqi_event(payload)
        if event is None:
            return self._ignored(payload.get("id"), payload.get("type"))
        return await self.reconcile(event)

    async def handle_stripe(self, body: bytes, signature: str | None) -> WebhookResult:
        secret = self._secret_for(PaymentProvider.STRIPE)
        if secret and not verify_stripe_signature(body, signature, secret, self.tolerance_seconds):
            self._reject(PaymentProvider.STRIPE)

        payload = parse_payload(body)
        event = normalize_stripe_event(payload)
        if event is None:
            return self._ignored(payload.get("id"), payload.get("type"))
        return await self.reconcile(event)

    async def handle_mercadopago(
        self,
        body: bytes,
        x_signature: str | None,
        x_request_id: str | None,
        data_id: str | None = None,
    ) -> WebhookResult:
        """
        Уведомление MercadoPago несет только data.id.

        Статус берется запросом get_status к API, сам webhook его не содержит.
        """
        payload = parse_payload(body)
        data_id = str((payload.get("data") or {}).get("id") or data_id or "")
        event_id = str(payload["id"]) if payload.get("id") is not None else None
        event_type = payload.get("action") or payload.get("type")

        secret = self._secret_for(PaymentProvider.MERCADOPAGO)
        if secret and not verify_mercadopago_signature(x_signature, x_request_id, data_id, secret):
            self._reject(PaymentProvider.MERCADOPAGO)

        if payload.get("type") != "payment" or not data_id:
            return self._ignored(event_id, event_type)

        gateway = self.payments.get_gateway(PaymentProvider.MERCADOPAGO)
        try:
            provider_status = await gateway.get_status(data_id)
        except GatewayError as e:
            # Платеж останется в своем статусе до sync / sweep
            self.logger.error(f"mercadopago webhook {event_type}: status of {data_id} unavailable: {e.message}")
            return WebhookResult(
                message="Payment status unavailable, event acknowledged",
                event_id=event_id,
                event_type=event_type,
            )
        category = mercadopago_category(provider_status.status)
        if category is None:
            return self._ignored(event_id, event_type)

        refund_amount = None
        refunded = provider_status.raw.get("transaction_amount_refunded")
        if category == WebhookCategory.REFUNDED and refunded:
            refund_amount = Decimal(str(refunded))

        event = WebhookEvent(
            provider=PaymentProvider.MERCADOPAGO,
            external_id=provider_status.external_id,
            category=category,
            event_type=event_type or "payment",
            event_id=event_id,
            raw={**payload, "payment": provider_status.raw},
            error_message=rejection_message(provider_status.status_detail)
            if category == WebhookCategory.FAILED
            else None,
            refund_amount=refund_amount,
        )
        return await self.reconcile(event)

    def _ignored(self, event_id: str | None, event_type: str | None) -> WebhookResult:
        self.logger.info(f"Webhook event {event_type} ({event_id}) ignored")
        return WebhookResult(message="Event ignored", event_id=event_id, event_type=event_type)

    async def reconcile(self, event: WebhookEvent) -> WebhookResult:
        """
        Применить событие к платежу.

        Неизвестный платеж, повтор и недопустимый переход отвечают success,
        чтобы шлюз перестал повторять доставку.
        """
        payment = await self.payments.find_by_external_id(event.external_id, event.provider)
        if payment is None:
            self.logger.info(
                f"{event.provider.value} webhook {event.event_type}: payment {event.external_id} not found"
            )
            return WebhookResult(
                message="Payment not found, event ignored",
                event_id=event.event_id,
                event_type=event.event_type,
            )

        target = CATEGORY_TARGETS[event.category]
        reference_number = payment.reference_number
        status_before = payment.status
        try:
            changed = await self.payments.apply_status(
                payment,
                target,
                error_message=event.error_message,
                provider_response={**(payment.provider_response or {}), "webhook": event.raw},
                refund_amount=event.refund_amount,
            )
        except InvalidStateError as e:
            self.logger.warning(
                f"{event.provider.value} webhook {event.event_type} for payment "
                f"{reference_number} not applied: {e.message}"
            )
            return WebhookResult(
                message=f"Event not applicable to {status_before} payment",
                event_id=event.event_id,
                event_type=event.event_type,
            )
        except ConflictError as e:
            # Например, шлюз подтвердил вторую оплату заказа: нужен ручной разбор
            self.logger.error(
                f"{event.provider.value} webhook {event.event_type} for payment "
                f"{reference_number} ({event.external_id}) not applied: {e.message}"
            )
            return WebhookResult(
                message=f"Payment {reference_number} not updated: {e.message}",
                event_id=event.event_id,
                event_type=event.event_type,
            )

        if changed:
            message = f"Payment {reference_number} marked as {target.value}"
        else:
            # Платеж перечитан: либо уже был в target, либо его изменил параллельный запрос
            message = f"Payment {reference_number} already {payment.status}"
        self.logger.info(f"{event.provider.value} webhook {event.event_type}: {message}")
        return WebhookResult(message=message, event_id=event.event_id, event_type=event.event_type)
