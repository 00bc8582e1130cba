"""
Переходы статуса платежа.

Одна функция перехода используется и синхронным путем (оркестратор), и
сверкой по webhook, поэтому разрешенные переходы у них не расходятся.
Запись делается условным UPDATE по текущему статусу: если строку уже
изменил параллельный запрос, переход считается не выполненным.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, InvalidStateError
from app.models.payment import Payment, PaymentStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.PENDING},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_STATUSES = {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    """Разрешен ли переход (переход в тот же статус не считается переходом)."""
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


async def transition_payment(
    db: AsyncSession,
    payment: Payment,
    target: PaymentStatus,
    *,
    external_id: str | None = None,
    card_mask: str | None = None,
    card_brand: str | None = None,
    error_message: str | None = None,
    provider_response: dict[str, Any] | None = None,
    refund_amount: Decimal | None = None,
    log: logging.Logger | None = None,
) -> bool:
    """
    Перевести платеж в статус target и зафиксировать транзакцию.

    Returns:
        True, если статус изменился в этом вызове. False, если платеж уже был
        в target или его успел изменить параллельный запрос (payment при этом
        перечитан из БД).

    Raises:
        InvalidStateError: Если переход запрещен или external_id уже задан другим
        ConflictError: У заказа уже есть другой завершенный платеж
    """
    log = log or logger
    current = PaymentStatus(payment.status)
    target = PaymentStatus(target)
    payment_id = payment.id
    reference_number = payment.reference_number

    if current == target:
        log.info(f"Payment {reference_number} already {target.value}, skipping")
        return False

    if not can_transition(current, target):
        raise InvalidStateError(
            f"Payment cannot move from {current.value} to {target.value}",
            details={"payment_id": str(payment.id), "status": current.value},
        )

    if external_id and payment.external_id and payment.external_id != external_id:
        raise InvalidStateError(
            "Payment already has a different external id",
            details={"payment_id": str(payment.id)},
        )

    if target == PaymentStatus.COMPLETED:
        stmt = select(Payment.reference_number).where(
            Payment.order_id == payment.order_id,
            Payment.id != payment_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        paid_by = (await db.execute(stmt)).scalars().first()
        if paid_by:
            raise ConflictError(
                f"Order already paid by payment {paid_by}",
                details={"payment_id": str(payment_id), "completed_payment": paid_by},
            )

    now = datetime.utcnow()
    values: dict[str, Any] = {"status": target.value, "updated_at": now}
    conditions = [Payment.id == payment.id, Payment.status == current.value]

    if external_id and not payment.external_id:
        values["external_id"] = external_id
        conditions.append(Payment.external_id.is_(None))
    if card_mask is not None:
        values["card_mask"] = card_mask
    if card_brand is not None:
        values["card_brand"] = card_brand
    if error_message is not None:
        values["error_message"] = error_message
    if provider_response is not None:
        values["provider_response"] = provider_response
    if target == PaymentStatus.COMPLETED and payment.paid_at is None:
        values["paid_at"] = now
    if target == PaymentStatus.REFUNDED and payment.refunded_at is None:
        values["refunded_at"] = now
        values["refund_amount"] = refund_amount if refund_amount is not None else payment.amount

    stmt = (
        update(Payment)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except IntegrityError:
        # Уникальные индексы: второй completed на заказ или чужой external_id
        await db.rollback()
        raise ConflictError(
            f"Payment {reference_number} conflicts with another payment",
            details={"payment_id": str(payment_id)},
        )

    if result.rowcount == 0:
        # Другой путь (webhook или синхронный ответ) успел первым
        await db.rollback()
        await db.refresh(payment)
        log.info(
            f"Payment {reference_number} changed concurrently "
            f"({current.value} -> {payment.status}), {target.value} not applied"
        )
        return False

    await db.commit()
    await db.refresh(payment)
    log.info(f"Payment {reference_number}: {current.value} -> {target.value}")
    return True
