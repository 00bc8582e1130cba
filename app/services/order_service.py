"""Сервис заказов (только то, что нужно платежному модулю)."""
import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateError, NotFoundError
from app.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

PAYABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


class OrderService:
    """Сервис для работы с заказами."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_owner(self, order_id: uuid.UUID, user_id: uuid.UUID) -> Order:
        """Получить заказ пользователя. Чужой заказ выглядит как несуществующий."""
        stmt = select(Order).where(Order.id == order_id, Order.user_id == user_id)
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()

        if not order:
            raise NotFoundError(f"Order with ID {order_id} not found")

        return order

    @staticmethod
    def is_payable(order: Order) -> bool:
        return OrderStatus(order.status) in PAYABLE_STATUSES

    async def update_status(self, order_id: uuid.UUID, new_status: OrderStatus) -> Order:
        """
        Сменить статус заказа с проверкой перехода.

        Строка заказа блокируется на время изменения (SELECT ... FOR UPDATE).

        Raises:
            NotFoundError: Заказ не найден
            InvalidStateError: Переход недопустим
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()

        if not order:
            raise NotFoundError(f"Order with ID {order_id} not found")

        current = OrderStatus(order.status)
        if new_status not in ORDER_TRANSITIONS[current]:
            await self.db.rollback()
            raise InvalidStateError(
                f"Cannot transition order from {current.value} to {new_status.value}",
                details={"order_id": str(order_id)},
            )

        now = datetime.utcnow()
        order.status = new_status.value
        if new_status == OrderStatus.PAID and not order.paid_at:
            order.paid_at = now
        elif new_status == OrderStatus.SHIPPED and not order.shipped_at:
            order.shipped_at = now
        elif new_status == OrderStatus.DELIVERED and not order.delivered_at:
            order.delivered_at = now

        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Order {order.order_number} status updated to {new_status.value}")
        return order
