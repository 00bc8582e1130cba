"""Сервис для работы с платежами."""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import (
    AppError,
    ConflictError,
    GatewayError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from app.core.locks import payment_locks
from app.models.order import Order, OrderStatus
from app.models.payment import Payment, PaymentMethod, PaymentProvider, PaymentStatus
from app.services.notification_service import Notifier, PaymentEvent, PaymentNotification, notify_safely
from app.services.order_service import OrderService
from app.services.payment_gateways import (
    ChargeRequest,
    PaymentGateway,
    RefundRequest,
    build_gateways,
    classify_status,
)
from app.services.payment_gateways.base import CENT
from app.services.payment_state import TERMINAL_STATUSES, transition_payment

logger = logging.getLogger(__name__)

REFERENCE_RETRIES = 5


class PaymentService:
    """
    Оркестратор платежей.

    Проверяет заказ, создает запись платежа до обращения к шлюзу, вызывает
    нужный адаптер и переводит платеж и заказ по статусам. Сверка по webhook
    использует тот же apply_status, поэтому оба пути ведут себя одинаково.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateways: dict[PaymentProvider, PaymentGateway] | None = None,
        notifier: Notifier | None = None,
        log: logging.Logger | None = None,
    ):
        self.db = db
        self.gateways = gateways if gateways is not None else build_gateways()
        self.notifier = notifier
        self.logger = log or logger
        self.orders = OrderService(db)

    def get_gateway(self, provider: PaymentProvider | str) -> PaymentGateway:
        try:
            return self.gateways[PaymentProvider(provider)]
        except (KeyError, ValueError):
            raise InvalidStateError(f"Unsupported provider: {provider}")

    # ==================== СОЗДАНИЕ ====================

    async def create_payment(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        provider: PaymentProvider | str,
        method: PaymentMethod | str,
        token: str,
        email: str,
        description: str | None = None,
        installments: int | None = None,
        payment_method_id: str | None = None,
        identification: dict[str, str] | None = None,
        return_url: str | None = None,
    ) -> Payment:
        """
        Оплатить заказ.

        Raises:
            NotFoundError: Заказ не найден или принадлежит другому пользователю
            InvalidStateError: Заказ нельзя оплатить в текущем статусе
            ConflictError: У заказа уже есть завершенный платеж или ожидающий подтверждения
            GatewayError: Шлюз отклонил платеж или недоступен (платеж сохранен как FAILED)
        """
        provider = PaymentProvider(provider)
        gateway = self.get_gateway(provider)

        order = await self.orders.get_for_owner(order_id, user_id)

        if not self.orders.is_payable(order):
            raise InvalidStateError(
                "Order cannot be paid in current status",
                details={"order_id": str(order.id), "status": order.status},
            )

        existing = await self._find_blocking_payment(order.id)
        if existing and existing.status == PaymentStatus.COMPLETED.value:
            raise ConflictError(
                "Order has already been paid",
                details={"payment_id": str(existing.id)},
            )
        if existing:
            # Шлюз еще может подтвердить эту попытку webhook'ом
            raise ConflictError(
                "Order has a payment awaiting confirmation",
                details={"payment_id": str(existing.id), "status": existing.status},
            )

        # После rollback объекты сессии истекают, поэтому ключи берем заранее
        order_id = order.id
        order_number = order.order_number

        # Запись PROCESSING сохраняется до вызова шлюза: это якорь для сверки
        payment = await self._create_payment_record(order, user_id, provider, PaymentMethod(method))
        payment_id = payment.id
        reference_number = payment.reference_number

        request = ChargeRequest(
            amount=payment.amount,
            currency=payment.currency,
            token=token,
            email=email,
            description=description or f"Orden {order_number}",
            metadata={
                "order_id": str(order_id),
                "order_number": order_number,
                "payment_id": str(payment_id),
                "reference_number": reference_number,
            },
            installments=installments or 1,
            payment_method_id=payment_method_id,
            identification=identification,
            return_url=return_url,
        )

        external_id = None
        try:
            result = await gateway.charge(request)
            external_id = result.external_id
            target = classify_status(gateway, result.status)
            if target == PaymentStatus.FAILED:
                raise GatewayError(f"Payment failed with status: {result.status}", provider=provider.value)

            provider_response: dict[str, Any] = dict(result.raw)
            if gateway.requires_additional_action(result.status):
                provider_response["requires_action"] = True

            await self.apply_status(
                payment,
                target,
                external_id=result.external_id,
                card_mask=result.card_mask,
                card_brand=result.card_brand,
                provider_response=provider_response,
            )
        except ConflictError as e:
            # Списание прошло, но заказ уже оплачен другим платежом: нужен ручной возврат
            self.logger.error(
                f"Payment {reference_number} charged as {external_id} "
                f"but order {order_number} is already paid: {e.message}"
            )
            await self._fail_payment(payment, reference_number, e, external_id=external_id)
            raise
        except Exception as e:
            await self._fail_payment(payment, reference_number, e, external_id=external_id)
            if isinstance(e, GatewayError):
                self.logger.error(f"Payment {reference_number} failed: {e.message}")
                raise
            self.logger.error(f"Payment {reference_number} failed unexpectedly: {e!r}", exc_info=True)
            raise GatewayError("Payment processing error", provider=provider.value) from e

        payment = await self.get_payment(payment_id)
        self.logger.info(
            f"Payment {reference_number} via {provider.value} for order {order_number}: {payment.status}"
        )
        return payment

    async def _find_blocking_payment(self, order_id: uuid.UUID) -> Payment | None:
        """Завершенный платеж заказа или PENDING-попытка, уже известная шлюзу."""
        stmt = (
            select(Payment)
            .where(
                Payment.order_id == order_id,
                or_(
                    Payment.status == PaymentStatus.COMPLETED.value,
                    and_(
                        Payment.status == PaymentStatus.PENDING.value,
                        Payment.external_id.is_not(None),
                    ),
                ),
            )
            # Сначала completed
            .order_by(case((Payment.status == PaymentStatus.COMPLETED.value, 0), else_=1))
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def generate_reference_number(self) -> str:
        """PAY-<YYYYMMDD>-<порядковый номер за день>."""
        prefix = f"PAY-{datetime.utcnow().strftime('%Y%m%d')}-"
        stmt = select(func.count()).select_from(Payment).where(Payment.reference_number.like(f"{prefix}%"))
        count = (await self.db.execute(stmt)).scalar_one()
        return f"{prefix}{count + 1:04d}"

    async def _create_payment_record(
        self,
        order: Order,
        user_id: uuid.UUID,
        provider: PaymentProvider,
        method: PaymentMethod,
    ) -> Payment:
        # rollback истекает order, поэтому поля читаем один раз
        order_id, amount, currency = order.id, order.total, order.currency

        # Номер уникален в БД; при одновременном создании пересчитываем и пробуем снова
        for _ in range(REFERENCE_RETRIES):
            reference_number = await self.generate_reference_number()
            payment = Payment(
                reference_number=reference_number,
                user_id=user_id,
                order_id=order_id,
                provider=provider.value,
                method=method.value,
                amount=amount,
                currency=currency,
                status=PaymentStatus.PROCESSING.value,
            )
            self.db.add(payment)
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                self.logger.warning(f"Reference number {reference_number} already taken, retrying")
                continue
            await self.db.refresh(payment)
            return payment

        raise InternalError("Could not allocate a payment reference number")

    async def _fail_payment(
        self,
        payment: Payment,
        reference_number: str,
        error: Exception,
        external_id: str | None = None,
    ) -> None:
        """Сохранить FAILED с текстом ошибки. Исходную ошибку пробрасывает вызывающий."""
        message = error.message if isinstance(error, AppError) else (str(error) or "Unknown error")
        try:
            await self.db.rollback()
            await self.db.refresh(payment)
            await self.apply_status(
                payment,
                PaymentStatus.FAILED,
                external_id=external_id,
                error_message=message,
            )
        except Exception as persist_error:
            self.logger.error(
                f"Could not persist failure of payment {reference_number}: {persist_error!r}",
                exc_info=True,
            )

    # ==================== ПЕРЕХОДЫ ====================

    async def apply_status(
        self,
        payment: Payment,
        target: PaymentStatus,
        *,
        external_id: str | None = None,
        card_mask: str | None = None,
        card_brand: str | None = None,
        error_message: str | None = None,
        provider_response: dict[str, Any] | None = None,
        refund_amount: Decimal | None = None,
    ) -> bool:
        """
        Перевести платеж и выполнить побочные эффекты перехода.

        COMPLETED двигает заказ в PAID, REFUNDED - в REFUNDED; финальные
        статусы отправляют уведомление. Побочные эффекты выполняются только
        тем запросом, который реально изменил строку.

        После True объект payment может быть истекшим: читать его заново
        через get_payment.

        Raises:
            InvalidStateError: Переход запрещен
            ConflictError: Заказ уже оплачен другим платежом
        """
        changed = await transition_payment(
            self.db,
            payment,
            target,
            external_id=external_id,
            card_mask=card_mask,
            card_brand=card_brand,
            error_message=error_message,
            provider_response=provider_response,
            refund_amount=refund_amount,
            log=self.logger,
        )
        if not changed:
            return False

        payment_id = payment.id
        order_id = payment.order_id
        reference_number = payment.reference_number

        if target == PaymentStatus.COMPLETED:
            await self._advance_order(order_id, reference_number, OrderStatus.PAID)
            await self._notify(payment_id, PaymentEvent.SUCCEEDED)
        elif target == PaymentStatus.FAILED:
            await self._notify(payment_id, PaymentEvent.FAILED, error_message)
        elif target == PaymentStatus.REFUNDED:
            await self._advance_order(order_id, reference_number, OrderStatus.REFUNDED)
            await self._notify(payment_id, PaymentEvent.REFUNDED)

        return True

    async def _advance_order(self, order_id: uuid.UUID, reference_number: str, status: OrderStatus) -> None:
        """Ошибка на стороне заказа не откатывает уже сохраненный платеж."""
        try:
            await self.orders.update_status(order_id, status)
        except AppError as e:
            await self.db.rollback()
            self.logger.warning(
                f"Order {order_id} not moved to {status.value} after payment {reference_number}: {e.message}"
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.logger.error(
                f"Database error moving order {order_id} to {status.value}: {e!r}",
                exc_info=True,
            )

    async def _notify(
        self,
        payment_id: uuid.UUID,
        event: PaymentEvent,
        error_message: str | None = None,
    ) -> None:
        if self.notifier is None:
            return
        try:
            payment = await self.get_payment(payment_id)
        except (AppError, SQLAlchemyError) as e:
            self.logger.error(f"Could not load payment {payment_id} for notification: {e!r}")
            return
        await notify_safely(
            self.notifier,
            PaymentNotification.from_payment(payment, event, error_message),
            self.logger,
        )

    # ==================== ВОЗВРАТ ====================

    async def refund_payment(
        self,
        payment_id: uuid.UUID,
        amount: Decimal | float | None = None,
        reason: str | None = None,
    ) -> Payment:
        """
        Вернуть деньги через тот же шлюз, которым было списание.

        Raises:
            NotFoundError: Платеж не найден
            InvalidStateError: Платеж не COMPLETED, нет external_id или неверная сумма
            GatewayError: Шлюз отказал в возврате (платеж не меняется)
        """
        async with payment_locks.acquire(payment_id):
            payment = await self.get_payment(payment_id)

            if payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidStateError(
                    "Only completed payments can be refunded",
                    details={"payment_id": str(payment.id), "status": payment.status},
                )

            if not payment.external_id:
                raise InvalidStateError("Payment has no external reference")

            refund_amount = (
                Decimal(str(amount)).quantize(CENT) if amount is not None else payment.amount
            )
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise InvalidStateError(
                    f"Refund amount must be between 0.01 and {payment.amount}",
                    details={"amount": str(refund_amount)},
                )

            gateway = self.get_gateway(payment.provider)
            try:
                result = await gateway.refund(
                    RefundRequest(
                        external_id=payment.external_id,
                        amount=refund_amount,
                        currency=payment.currency,
                        full_refund=refund_amount == payment.amount,
                        reason=reason,
                    )
                )
            except GatewayError as e:
                self.logger.error(f"Refund failed for payment {payment.reference_number}: {e.message}")
                raise

            summary = f"{payment.reference_number} via {payment.provider}: {refund_amount} {payment.currency}"
            provider_response = {**(payment.provider_response or {}), "refund": result.raw}
            await self.apply_status(
                payment,
                PaymentStatus.REFUNDED,
                provider_response=provider_response,
                refund_amount=refund_amount,
            )

            self.logger.info(f"Payment refunded {summary}")
            return await self.get_payment(payment_id)

    # ==================== СВЕРКА С ПРОВАЙДЕРОМ ====================

    async def sync_with_provider(self, payment_id: uuid.UUID) -> Payment:
        """
        Запросить статус у провайдера и применить его.

        Нужен для разбора платежей, зависших в PROCESSING / PENDING.
        """
        payment = await self.get_payment(payment_id)

        if not payment.external_id:
            raise InvalidStateError("Payment has no external reference")

        if PaymentStatus(payment.status) in TERMINAL_STATUSES:
            self.logger.info(f"Payment {payment.reference_number} is already {payment.status}, nothing to sync")
            return payment

        gateway = self.get_gateway(payment.provider)
        provider_status = await gateway.get_status(payment.external_id)
        target = classify_status(gateway, provider_status.status)

        await self.apply_status(
            payment,
            target,
            error_message=(provider_status.status_detail or provider_status.status)
            if target == PaymentStatus.FAILED
            else None,
            provider_response={**(payment.provider_response or {}), "status_check": provider_status.raw},
        )
        return await self.get_payment(payment_id)

    async def sweep_unresolved_payments(self, older_than: timedelta) -> int:
        """Прогнать sync_with_provider по давно не обновлявшимся PROCESSING / PENDING."""
        threshold = datetime.utcnow() - older_than
        stmt = select(Payment.id).where(
            Payment.status.in_([PaymentStatus.PROCESSING.value, PaymentStatus.PENDING.value]),
            Payment.external_id.is_not(None),
            Payment.updated_at < threshold,
        )
        payment_ids = (await self.db.execute(stmt)).scalars().all()

        resolved = 0
        for payment_id in payment_ids:
            try:
                payment = await self.sync_with_provider(payment_id)
            except AppError as e:
                self.logger.warning(f"Sweep could not sync payment {payment_id}: {e.message}")
                continue
            if PaymentStatus(payment.status) in TERMINAL_STATUSES:
                resolved += 1

        if payment_ids:
            self.logger.info(f"Payment sweep: {resolved} of {len(payment_ids)} unresolved payments settled")
        return resolved

    # ==================== ЧТЕНИЕ ====================

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        """Получить платеж вместе с заказом и пользователем (всегда свежий из БД)."""
        stmt = (
            select(Payment)
            .options(selectinload(Payment.order), selectinload(Payment.user))
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()

        if not payment:
            raise NotFoundError(f"Payment with ID {payment_id} not found")

        return payment

    async def find_by_external_id(self, external_id: str, provider: PaymentProvider) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.external_id == external_id, Payment.provider == provider.value)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_payments(self, user_id: uuid.UUID | None = None) -> list[Payment]:
        """Платежи пользователя (или все для админки), новые первыми."""
        stmt = select(Payment).order_by(Payment.created_at.desc())
        if user_id:
            stmt = stmt.where(Payment.user_id == user_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_payments_for_order(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> list[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc())
        if user_id:
            stmt = stmt.where(Payment.user_id == user_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
