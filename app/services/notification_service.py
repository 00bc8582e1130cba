"""Уведомления покупателю о платежах: email и push в Telegram."""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol

import httpx

from app.config import settings
from app.core.telegram import send_telegram_message
from app.models.payment import Payment

logger = logging.getLogger(__name__)


class PaymentEvent(str, Enum):
    """Финальные события платежа, о которых сообщаем покупателю."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


EMAIL_SUBJECTS = {
    PaymentEvent.SUCCEEDED: "Pago confirmado - Orden {order_number}",
    PaymentEvent.FAILED: "Problema con tu pago - Orden {order_number}",
    PaymentEvent.REFUNDED: "Reembolso procesado - Orden {order_number}",
}

PUSH_TITLES = {
    PaymentEvent.SUCCEEDED: "Pago exitoso",
    PaymentEvent.FAILED: "Pago fallido",
    PaymentEvent.REFUNDED: "Reembolso procesado",
}


@dataclass
class PaymentNotification:
    """Данные для уведомления, собранные из платежа, заказа и пользователя."""

    event: PaymentEvent
    payment_id: uuid.UUID
    reference_number: str
    order_id: uuid.UUID
    order_number: str
    amount: Decimal
    currency: str
    provider: str
    card_mask: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    telegram_id: int | None = None
    error_message: str | None = None

    @classmethod
    def from_payment(
        cls,
        payment: Payment,
        event: PaymentEvent,
        error_message: str | None = None,
    ) -> "PaymentNotification":
        """Платеж должен быть загружен вместе с order и user."""
        order = payment.order
        user = payment.user
        return cls(
            event=event,
            payment_id=payment.id,
            reference_number=payment.reference_number,
            order_id=payment.order_id,
            order_number=order.order_number if order else "",
            amount=payment.amount,
            currency=payment.currency,
            provider=payment.provider,
            card_mask=payment.card_mask,
            customer_email=user.email if user else None,
            customer_name=(user.full_name if user else None) or "Cliente",
            telegram_id=user.telegram_id if user else None,
            error_message=error_message or payment.error_message,
        )


class Notifier(Protocol):
    async def notify(self, notification: PaymentNotification) -> None: ...


def render_text(notification: PaymentNotification) -> str:
    lines = [
        f"{PUSH_TITLES[notification.event]}",
        f"Orden: {notification.order_number}",
        f"Referencia: {notification.reference_number}",
        f"Monto: {notification.amount} {notification.currency}",
    ]
    if notification.card_mask:
        lines.append(f"Tarjeta: {notification.card_mask}")
    if notification.event == PaymentEvent.FAILED and notification.error_message:
        lines.append(f"Motivo: {notification.error_message}")
    return "\n".join(lines)


class NotificationService:
    """Отправка email через HTTP API и push через Telegram бота."""

    def __init__(
        self,
        email_api_url: str | None = None,
        email_api_key: str | None = None,
        email_from: str | None = None,
        telegram_bot_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.email_api_url = settings.email_api_url if email_api_url is None else email_api_url
        self.email_api_key = settings.email_api_key if email_api_key is None else email_api_key
        self.email_from = email_from or settings.email_from
        self.telegram_bot_token = settings.telegram_bot_token if telegram_bot_token is None else telegram_bot_token
        self.timeout = timeout or settings.notification_timeout_seconds
        self.transport = transport

    async def notify(self, notification: PaymentNotification) -> None:
        """
        Отправить email и push параллельно.

        Ошибки каналов логируются и не пробрасываются.
        """
        tasks = []
        if self.email_api_url and notification.customer_email:
            tasks.append(self.send_email(notification))
        else:
            logger.warning(
                f"Email for payment {notification.reference_number} skipped: "
                f"no email API or customer email"
            )
        if self.telegram_bot_token and notification.telegram_id:
            tasks.append(self.send_push(notification))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    f"Failed to deliver {notification.event.value} notification "
                    f"for payment {notification.reference_number}: {result!r}"
                )

    async def send_email(self, notification: PaymentNotification) -> None:
        subject = EMAIL_SUBJECTS[notification.event].format(order_number=notification.order_number)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.email_api_url,
                json={
                    "from": self.email_from,
                    "to": [notification.customer_email],
                    "subject": subject,
                    "text": f"Hola {notification.customer_name},\n\n{render_text(notification)}",
                },
                headers={"Authorization": f"Bearer {self.email_api_key}"},
            )
            response.raise_for_status()
        logger.info(f"Payment {notification.event.value} email sent to {notification.customer_email}")

    async def send_push(self, notification: PaymentNotification) -> None:
        await send_telegram_message(
            self.telegram_bot_token,
            notification.telegram_id,
            render_text(notification),
            timeout=self.timeout,
            transport=self.transport,
        )
        logger.info(f"Payment {notification.event.value} push sent to user {notification.telegram_id}")


async def notify_safely(
    notifier: Notifier | None,
    notification: PaymentNotification,
    log: logging.Logger | None = None,
) -> None:
    """Уведомление никогда не должно ломать платеж или ответ на webhook."""
    if notifier is None:
        return
    log = log or logger
    try:
        await notifier.notify(notification)
    except Exception as e:
        log.error(f"Notifier failed for payment {notification.reference_number}: {e!r}", exc_info=True)
