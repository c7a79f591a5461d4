import httpx
import logging
from typing import Dict, Any, Optional

from lifescanner.config import settings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096

class TelegramError(Exception):
    """The Bot API rejected a request or could not be reached"""

class TelegramBot:
    """Thin Bot API client"""

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = settings.telegram_bot_token if token is None else token
        self.base_url = f"{(api_url or settings.telegram_api_url).rstrip('/')}/bot{self.token}"
        self.client = httpx.AsyncClient(timeout=15.0, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def is_valid_token(self) -> bool:
        return len(self.token) > 0

    async def _call(self, method: str, payload: Optional[Dict[str, Any]] = None, http_method: str = "POST") -> Dict[str, Any]:
        url = f"{self.base_url}/{method}"
        try:
            if http_method == "GET":
                response = await self.client.get(url)
            else:
                response = await self.client.post(url, json=payload or {})
        except httpx.HTTPError as e:
            raise TelegramError(f"Telegram API {method} failed: {e}") from e

        if response.status_code >= 400:
            raise TelegramError(f"Telegram API error: {response.text}")
        return response.json()

    async def send_message(self, chat_id, text: str, parse_mode: str = "HTML", disable_web_page_preview: bool = False, **options):
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 1] + "…"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": disable_web_page_preview,
            **options,
        }
        await self._call("sendMessage", payload)

    async def set_webhook(self, url: str, secret_token: Optional[str] = None):
        payload = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        await self._call("setWebhook", payload)
        logger.info("✅ Telegram webhook set successfully")

    async def get_webhook_info(self) -> Dict[str, Any]:
        return await self._call("getWebhookInfo", http_method="GET")

    async def delete_webhook(self):
        await self._call("deleteWebhook")
        logger.info("Telegram webhook deleted successfully")

    async def get_me(self) -> Dict[str, Any]:
        return await self._call("getMe", http_method="GET")

    async def close(self):
        await self.client.aclose()
