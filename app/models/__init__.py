"""Модели базы данных."""
from app.models.user import User
from app.models.order import Order, OrderStatus
from app.models.payment import Payment, PaymentMethod, PaymentProvider, PaymentStatus

__all__ = [
    "User",
    "Order",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentStatus",
]
