"""Webhook эндпоинты платежных шлюзов."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_notifier, get_payment_gateways
from app.core.exceptions import AppError
from app.database import get_db
from app.models.payment import PaymentProvider
from app.services.notification_service import Notifier
from app.services.payment_gateways import PaymentGateway
from app.services.webhook_service import WebhookResult, WebhookService

router = APIRouter()


def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    gateways: dict[PaymentProvider, PaymentGateway] = Depends(get_payment_gateways),
    notifier: Notifier | None = Depends(get_notifier),
) -> WebhookService:
    return WebhookService(db, gateways=gateways, notifier=notifier)


def rejected(exc: AppError) -> JSONResponse:
    """Отказ (подпись, тело) в том же формате, что и обычный ответ шлюзу."""
    result = WebhookResult(success=False, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=result.model_dump(by_alias=True))


@router.post("/culqi", response_model=WebhookResult)
async def culqi_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    body = await request.body()
    try:
        return await service.handle_culqi(body, request.headers.get("X-Culqi-Signature"))
    except AppError as e:
        return rejected(e)


@router.post("/mercadopago", response_model=WebhookResult)
async def mercadopago_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """MercadoPago дублирует data.id в query (?data.id=...)."""
    body = await request.body()
    try:
        return await service.handle_mercadopago(
            body,
            x_signature=request.headers.get("X-Signature"),
            x_request_id=request.headers.get("X-Request-Id"),
            data_id=request.query_params.get("data.id"),
        )
    except AppError as e:
        return rejected(e)


@router.post("/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    body = await request.body()
    try:
        return await service.handle_stripe(body, request.headers.get("Stripe-Signature"))
    except AppError as e:
        return rejected(e)
