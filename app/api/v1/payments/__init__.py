"""Payments API."""
import logging
import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.payments import webhooks
from app.core.auth import get_current_admin, get_current_user
from app.core.dependencies import get_notifier, get_payment_gateways
from app.core.exceptions import NotFoundError
from app.database import get_db
from app.models.payment import PaymentMethod, PaymentProvider
from app.services.notification_service import Notifier
from app.services.payment_gateways import PaymentGateway
from app.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()
router.include_router(webhooks.router, prefix="/webhooks")


class CreatePaymentRequest(BaseModel):
    """Запрос на оплату заказа токеном карты."""

    order_id: uuid.UUID
    provider: PaymentProvider
    method: PaymentMethod = PaymentMethod.CREDIT_CARD
    token: str = Field(..., min_length=1)  # Токен карты из фронтенда провайдера
    email: str = Field(..., min_length=3)
    description: str | None = None
    installments: int | None = Field(None, ge=1, le=36)
    payment_method_id: str | None = None  # MercadoPago: visa / master / ...
    identification: dict[str, str] | None = None  # MercadoPago: {"type": "DNI", "number": "..."}
    return_url: str | None = None  # Stripe: возврат после 3DS


class RefundPaymentRequest(BaseModel):
    """Запрос на возврат. Без amount - полный возврат."""

    amount: Decimal | None = None
    reason: str | None = None


class PaymentResponse(BaseModel):
    """Платеж без сырого ответа провайдера."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    reference_number: str
    order_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    provider: str
    method: str
    amount: Decimal
    currency: str
    external_id: str | None = None
    card_mask: str | None = None
    card_brand: str | None = None
    error_message: str | None = None
    refund_amount: Decimal | None = None
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateways: dict[PaymentProvider, PaymentGateway] = Depends(get_payment_gateways),
    notifier: Notifier | None = Depends(get_notifier),
) -> PaymentService:
    return PaymentService(db, gateways=gateways, notifier=notifier)


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: CreatePaymentRequest,
    current_user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Оплатить заказ.

    Заказ должен принадлежать текущему пользователю и быть в статусе
    pending или confirmed. Отказ шлюза возвращается как 402 с сообщением
    провайдера, попытка при этом сохраняется как failed.
    """
    return await service.create_payment(
        order_id=request.order_id,
        user_id=current_user["sub"],
        provider=request.provider,
        method=request.method,
        token=request.token,
        email=request.email,
        description=request.description,
        installments=request.installments,
        payment_method_id=request.payment_method_id,
        identification=request.identification,
        return_url=request.return_url,
    )


@router.get("", response_model=list[PaymentResponse])
async def list_my_payments(
    current_user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Платежи текущего пользователя."""
    return await service.list_payments(user_id=current_user["sub"])


@router.get("/admin/all", response_model=list[PaymentResponse])
async def list_all_payments(
    current_admin: dict = Depends(get_current_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Все платежи (только для админа)."""
    return await service.list_payments()


@router.get("/order/{order_id}", response_model=list[PaymentResponse])
async def list_order_payments(
    order_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Попытки оплаты заказа."""
    user_id = None if current_user.get("role") == "admin" else current_user["sub"]
    return await service.get_payments_for_order(order_id, user_id=user_id)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id)

    # Чужой платеж выглядит как несуществующий
    if current_user.get("role") != "admin" and payment.user_id != current_user["sub"]:
        raise NotFoundError(f"Payment with ID {payment_id} not found")

    return payment


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundPaymentRequest | None = None,
    current_admin: dict = Depends(get_current_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Вернуть деньги (полностью или частично). Только для админа."""
    request = request or RefundPaymentRequest()
    logger.info(f"Refund of payment {payment_id} requested by {current_admin['sub']}")
    return await service.refund_payment(payment_id, amount=request.amount, reason=request.reason)


@router.post("/{payment_id}/sync", response_model=PaymentResponse)
async def sync_payment(
    payment_id: uuid.UUID,
    current_admin: dict = Depends(get_current_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Запросить актуальный статус у провайдера и применить его."""
    return await service.sync_with_provider(payment_id)
