"""Telegram Bot API client - sync version for RQ workers."""
import logging

import httpx

from memobot.config import settings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096


class TelegramService:
    """Synchronous Telegram API client for RQ workers."""

    def __init__(self, token: str | None = None, client: httpx.Client | None = None):
        """Initialize with bot token."""
        self.token = token or settings.TELEGRAM_BOT_TOKEN
        self.base_url = f"https://api.telegram.org/bot{self.token}"
        self._client = client or httpx.Client(timeout=30.0)

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> dict:
        """Send a message to a chat."""
        payload = {
            "chat_id": chat_id,
            "text": text,
        }
        if reply_to_message_id:
            payload["reply_to_message_id"] = reply_to_message_id
        if parse_mode:
            payload["parse_mode"] = parse_mode

        response = self._client.post(f"{self.base_url}/sendMessage", json=payload)
        response.raise_for_status()
        return response.json()

    def send_chat_action(self, chat_id: int, action: str = "typing") -> dict:
        """Send a chat action (e.g., typing indicator)."""
        response = self._client.post(
            f"{self.base_url}/sendChatAction",
            json={"chat_id": chat_id, "action": action},
        )
        response.raise_for_status()
        return response.json()

    def send_long_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        max_length: int = MAX_MESSAGE_LENGTH,
    ) -> list[dict]:
        """Send a message, splitting if too long."""
        results = []
        for i in range(0, len(text), max_length):
            chunk = text[i : i + max_length]
            # Only reply to the original message for the first chunk
            reply_id = reply_to_message_id if i == 0 else None
            results.append(self.send_message(chat_id, chunk, reply_id))
        return results

    def close(self) -> None:
        self._client.close()
