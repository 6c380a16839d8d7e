"""Telegram Bot API adapter."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx

from maimai.models import Message
from maimai.render import chunk_text, strip_html_tags

LOGGER = logging.getLogger(__name__)


class TelegramAdapter:
    """Long-polls getUpdates and sends chunked HTML replies."""

    def __init__(
        self,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        poll_timeout_seconds: int = 30,
        retry_delay_seconds: float = 5.0,
    ) -> None:
        self._base_url = f"{api_base_url.rstrip('/')}/bot{bot_token}"
        self._poll_timeout_seconds = poll_timeout_seconds
        self._retry_delay_seconds = retry_delay_seconds
        self._offset = 0

    async def poll_messages(self) -> AsyncIterator[Message]:
        """Yield text messages as they arrive, forever."""

        while True:
            try:
                updates = await self._get_updates()
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                LOGGER.warning("Telegram getUpdates failed: %s", exc)
                await asyncio.sleep(self._retry_delay_seconds)
                continue

            for update in updates:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                message = _to_message(update)
                if message is not None:
                    yield message

    async def _get_updates(self) -> list[dict[str, Any]]:
        timeout = httpx.Timeout(self._poll_timeout_seconds + 10)
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(
                f"{self._base_url}/getUpdates",
                params={"offset": self._offset, "timeout": self._poll_timeout_seconds},
            )
        data = resp.json()
        if resp.status_code != 200 or not data.get("ok"):
            raise RuntimeError(f"HTTP {resp.status_code}: {data.get('description', '')}")
        return [item for item in data.get("result", []) if isinstance(item, dict)]

    async def send_message(self, chat_id: str, text: str) -> None:
        """Send text in chunks, falling back to plain text when HTML is rejected."""

        for chunk in chunk_text(text):
            try:
                await self._send_chunk(chat_id, chunk, parse_mode="HTML")
            except RuntimeError as exc:
                LOGGER.warning("Telegram rejected HTML chunk, resending as plain text: %s", exc)
                await self._send_chunk(chat_id, strip_html_tags(chunk), parse_mode=None)

    async def _send_chunk(self, chat_id: str, text: str, parse_mode: str | None) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode

        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
            try:
                resp = await client.post(f"{self._base_url}/sendMessage", json=payload)
            except httpx.HTTPError as exc:
                raise RuntimeError(f"Telegram sendMessage failed: {exc}") from exc
        if resp.status_code != 200:
            raise RuntimeError(f"Telegram sendMessage failed (HTTP {resp.status_code}): {resp.text}")


def _to_message(update: dict[str, Any]) -> Message | None:
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    text = message.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    sender = message.get("from")
    chat = message.get("chat")
    if not isinstance(sender, dict) or not isinstance(chat, dict):
        return None

    return Message(
        chat_id=str(chat.get("id")),
        user_id=str(sender.get("id")),
        text=text.strip(),
        timestamp=datetime.fromtimestamp(int(message.get("date") or 0), tz=timezone.utc),
        message_id=str(message.get("message_id") or ""),
    )
