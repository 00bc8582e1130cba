"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app import models  # noqa: F401  регистрирует модели в Base.metadata
from app.config import settings
from app.api.v1 import router as api_v1_router
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.database import AsyncSessionLocal, Base, engine
from app.services.notification_service import NotificationService
from app.services.payment_service import PaymentService

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def sweep_unresolved_payments():
    """Периодическая сверка платежей, зависших в processing / pending."""
    try:
        async with AsyncSessionLocal() as db:
            service = PaymentService(db, notifier=NotificationService())
            resolved = await service.sweep_unresolved_payments(
                older_than=timedelta(minutes=settings.payment_sweep_age_minutes)
            )
            if resolved > 0:
                logger.info(f"Сверка платежей: завершено {resolved} зависших платежей")
    except Exception as e:
        logger.error(f"Ошибка при сверке платежей: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.payment_sweep_enabled:
        scheduler.add_job(
            sweep_unresolved_payments,
            trigger=IntervalTrigger(minutes=settings.payment_sweep_interval_minutes),
            id="sweep_unresolved_payments",
            name="Сверка зависших платежей",
            replace_existing=True,
        )
        scheduler.start()
        logger.info(
            f"Планировщик задач запущен. Сверка платежей каждые "
            f"{settings.payment_sweep_interval_minutes} мин"
        )

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await engine.dispose()


app = FastAPI(
    title="Payments API",
    description="Оплата заказов через Culqi, MercadoPago и Stripe, прием webhook",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - в development режиме разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "Payments API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}
