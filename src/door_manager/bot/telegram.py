"""Telegram Bot API long-polling transport."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from door_manager.bot.commands import CommandHandler

logger = logging.getLogger(__name__)

BASE_URL = "https://api.telegram.org"


class TelegramPoller:
    """Polls the Bot API for updates and answers them with a CommandHandler."""

    def __init__(
        self,
        token: str,
        handler: CommandHandler,
        poll_timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = token
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._offset: Optional[int] = None

    @property
    def _api_url(self) -> str:
        return f"{BASE_URL}/bot{self._token}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            # Long polls hold the request open for poll_timeout seconds
            self._client = httpx.AsyncClient(
                timeout=self._poll_timeout + 10,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def start(self) -> None:
        """Start polling in a background task."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Telegram bot started and polling for messages...")

    async def stop(self) -> None:
        """Stop polling."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.close()
        logger.info("Telegram bot stopped")

    async def _poll_loop(self) -> None:
        """Reconnecting poll loop."""
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                if self._running:
                    logger.error("Polling error: %s, retrying in 5s...", e)
                    await asyncio.sleep(5)

    async def _call(self, method: str, data: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.post(f"{self._api_url}/{method}", json=data)
        response.raise_for_status()
        payload = response.json()
        if not payload.get("ok"):
            raise RuntimeError(f"Telegram {method} failed: {payload.get('description')}")
        return payload.get("result")

    async def get_updates(self) -> list[dict[str, Any]]:
        data: dict[str, Any] = {
            "timeout": self._poll_timeout,
            "allowed_updates": ["message"],
        }
        if self._offset is not None:
            data["offset"] = self._offset
        return await self._call("getUpdates", data) or []

    async def send_message(self, chat_id: int, text: str, markdown: bool = False) -> None:
        data: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if markdown:
            data["parse_mode"] = "Markdown"
        await self._call("sendMessage", data)

    async def poll_once(self) -> int:
        """Fetch one batch of updates and answer each message.

        Returns:
            Number of updates processed
        """
        updates = await self.get_updates()
        for update in updates:
            self._offset = update["update_id"] + 1
            message = update.get("message")
            if not message:
                continue
            try:
                await self._process_message(message)
            except Exception as e:
                logger.error(f"Failed to handle update {update['update_id']}: {e}")
        return len(updates)

    async def _process_message(self, message: dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        username = (message.get("from") or {}).get("username")
        reply = await self._handler.handle(chat_id, username, message.get("text"))
        if reply is not None:
            await self.send_message(chat_id, reply.text, markdown=reply.markdown)
