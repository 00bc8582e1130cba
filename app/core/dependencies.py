"""Dependencies для FastAPI."""
from app.models.payment import PaymentProvider
from app.services.notification_service import NotificationService, Notifier
from app.services.payment_gateways import PaymentGateway, build_gateways


async def get_payment_gateways() -> dict[PaymentProvider, PaymentGateway]:
    """Адаптеры шлюзов с ключами из настроек (в тестах подменяется)."""
    return build_gateways()


async def get_notifier() -> Notifier | None:
    return NotificationService()
