"""Безопасность: JWT токены и проверка HMAC подписей."""
import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any

from jose import jwt

from app.config import settings


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Создание JWT токена."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(hours=24)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm="HS256")
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Декодирование JWT токена."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=["HS256"])
        return payload
    except jwt.JWTError:
        return None


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    """HMAC-SHA256 в hex."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str | None) -> bool:
    """Сравнение подписей за постоянное время."""
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


def parse_signature_header(header: str) -> dict[str, list[str]]:
    """
    Разбор заголовка вида "k1=v1,k2=v2".

    Ключи могут повторяться (Stripe присылает несколько v1).
    """
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep or not key:
            continue
        parts.setdefault(key.strip(), []).append(value.strip())
    return parts
