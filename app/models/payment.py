"""Модель платежа."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.order import Order
    from app.models.user import User


class PaymentStatus(str, Enum):
    """Статусы платежа."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentProvider(str, Enum):
    """Платежные шлюзы."""

    CULQI = "culqi"
    MERCADOPAGO = "mercadopago"
    STRIPE = "stripe"


class PaymentMethod(str, Enum):
    """Способы оплаты."""

    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    YAPE = "yape"
    BANK_TRANSFER = "bank_transfer"


class Payment(Base):
    """Попытка оплаты заказа.

    Записи никогда не удаляются. external_id выставляется один раз и служит
    ключом для сверки webhook.
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_payments_provider_external_id"),
        # Не больше одного завершенного платежа на заказ
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    reference_number: Mapped[str] = mapped_column(String, unique=True, nullable=False)  # PAY-20260115-0001
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PaymentStatus.PENDING.value)
    provider: Mapped[str] = mapped_column(String, nullable=False)  # culqi / mercadopago / stripe
    method: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String, default="PEN")
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)  # ID транзакции у провайдера
    card_mask: Mapped[str | None] = mapped_column(String, nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # Сырой ответ для аудита
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    order: Mapped["Order"] = relationship("Order")
    user: Mapped["User"] = relationship("User")
