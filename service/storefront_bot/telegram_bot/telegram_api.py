"""
Telegram Bot API client for outbound calls.

Thin httpx wrapper. send_message returns the new message id so callers can
track what the bot posted without peeking at transport internals.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from storefront_bot.config import get_settings
from storefront_bot.services.http_client import fetch_with_retry
from storefront_bot.errors import UrlFetchError

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


class TelegramAPI:
    """
    Outbound Bot API calls.

    Args:
        token: Bot token (defaults to settings.telegram_bot_token)
        client: Optional httpx client (tests pass one backed by MockTransport)
    """

    def __init__(self, token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        self.token = token or settings.telegram_bot_token
        self.timeout = settings.http_timeout_seconds
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        url = f"{API_BASE}/bot{self.token}/{method}"
        response = await self.client.post(url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json().get("result")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = None,
    ) -> int:
        """
        Send message to Telegram chat.

        Args:
            chat_id: Telegram chat ID
            text: Message text
            reply_markup: Inline keyboard, reply keyboard or keyboard removal
            parse_mode: Optional parse mode (Markdown, HTML)

        Returns:
            message_id of the sent message
        """
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        if parse_mode:
            payload["parse_mode"] = parse_mode

        result = await self._call("sendMessage", payload)
        return result["message_id"]

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
    ) -> None:
        """Edit an existing message (an empty inline keyboard drops the buttons)."""
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        await self._call("editMessageText", payload)

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        """Delete a message. Failures (already deleted, too old) are logged, not raised."""
        try:
            await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Could not delete message {message_id} in chat {chat_id}: {e}")
            return False

    async def delete_messages(self, chat_id: int, message_ids: list[int]) -> None:
        await asyncio.gather(*(self.delete_message(chat_id, mid) for mid in message_ids))

    async def delete_after(self, chat_id: int, message_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.delete_message(chat_id, message_id)

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        try:
            await self._call("answerCallbackQuery", payload)
        except httpx.HTTPError as e:
            logger.warning(f"Could not answer callback query {callback_query_id}: {e}")

    async def get_file_url(self, file_id: str) -> str:
        """Resolve a file_id to a downloadable URL."""
        result = await self._call("getFile", {"file_id": file_id})
        return f"{API_BASE}/file/bot{self.token}/{result['file_path']}"

    async def download_file(self, file_id: str) -> bytes:
        url = await self.get_file_url(file_id)
        response = await fetch_with_retry(self.client, url, timeout=30.0)
        if response.status_code >= 400:
            raise UrlFetchError(f"Telegram file download failed: {response.status_code}")
        return response.content


_api: Optional[TelegramAPI] = None


def get_telegram_api() -> TelegramAPI:
    """Get or create the shared Bot API client."""
    global _api
    if _api is None:
        _api = TelegramAPI()
    return _api
