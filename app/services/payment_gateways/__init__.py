"""Платежные шлюзы."""
from app.models.payment import PaymentProvider
from app.services.payment_gateways.base import (
    ChargeRequest,
    ChargeResult,
    PaymentGateway,
    ProviderStatus,
    RefundRequest,
    RefundResult,
    classify_status,
    from_minor_units,
    to_minor_units,
)
from app.services.payment_gateways.culqi import CulqiGateway
from app.services.payment_gateways.mercadopago import MercadoPagoGateway
from app.services.payment_gateways.stripe import StripeGateway


def build_gateways() -> dict[PaymentProvider, PaymentGateway]:
    """Реестр адаптеров по провайдеру; ключи берутся из настроек."""
    return {
        PaymentProvider.CULQI: CulqiGateway(),
        PaymentProvider.MERCADOPAGO: MercadoPagoGateway(),
        PaymentProvider.STRIPE: StripeGateway(),
    }


__all__ = [
    "ChargeRequest",
    "ChargeResult",
    "CulqiGateway",
    "MercadoPagoGateway",
    "PaymentGateway",
    "ProviderStatus",
    "RefundRequest",
    "RefundResult",
    "StripeGateway",
    "build_gateways",
    "classify_status",
    "from_minor_units",
    "to_minor_units",
]
