"""Отправка сообщений через Telegram Bot API."""
import logging

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


async def send_telegram_message(
    bot_token: str,
    chat_id: int,
    text: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """
    Отправить сообщение пользователю от имени бота.

    Raises:
        httpx.HTTPError: Если Telegram недоступен или вернул ошибку
    """
    async with httpx.AsyncClient(base_url=TELEGRAM_API_URL, timeout=timeout, transport=transport) as client:
        response = await client.post(
            f"/bot{bot_token}/sendMessage",
            json={"chat_id": chat_id, "text": text},
        )
        response.raise_for_status()
    logger.debug(f"Telegram message sent to chat {chat_id}")
