"""Telethon-backed inbox adapter.

A chat on the logged-in Telegram account plays the device inbox: the poll
source lists its latest messages, the push source subscribes to new ones.
An authorized session is the access permission.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from telethon import TelegramClient, events

from adapters.telegram_mapper import build_message
from core.errors import ConfigurationError
from core.models import Message
from core.ports import MessageCallback

LOGGER = logging.getLogger(__name__)

Authorizer = Callable[[TelegramClient], Awaitable[None]]


def _resolve_chat(sender: str):
    """Accept ``@username``, ``chat_id:<id>`` or a bare username."""

    if sender.startswith("chat_id:"):
        try:
            return int(sender.split("chat_id:", 1)[1])
        except ValueError as exc:
            raise ConfigurationError(f"Invalid chat id in sender {sender!r}") from exc
    return sender


class TelegramSubscription:
    """Handle that removes a registered Telethon event handler."""

    def __init__(self, client: TelegramClient, handler, builder) -> None:
        self._client = client
        self._handler = handler
        self._builder = builder

    def cancel(self) -> None:
        self._client.remove_event_handler(self._handler, self._builder)


class TelegramInbox:
    """Inbox and subscriber ports over one Telegram chat."""

    def __init__(self, client: TelegramClient, sender: str) -> None:
        self._client = client
        self._chat = _resolve_chat(sender)

    async def list(self, box: str, max_count: int) -> List[Message]:
        """Return up to ``max_count`` latest messages, newest first.

        ``box="inbox"`` keeps incoming messages only; any other value
        returns messages in both directions.
        """

        entity = await self._client.get_entity(self._chat)
        messages: List[Message] = []
        async for message in self._client.iter_messages(entity, limit=max_count):
            if box == "inbox" and getattr(message, "out", False):
                continue
            messages.append(build_message(message))
        return messages

    def subscribe(self, on_event: MessageCallback) -> TelegramSubscription:
        builder = events.NewMessage(chats=self._chat, incoming=True)

        async def handler(event) -> None:
            await on_event(build_message(event.message))

        self._client.add_event_handler(handler, builder)
        return TelegramSubscription(self._client, handler, builder)


class TelegramPermissions:
    """Treat an authorized Telethon session as message store access."""

    def __init__(self, client: TelegramClient, authorizer: Optional[Authorizer] = None) -> None:
        self._client = client
        self._authorizer = authorizer

    async def check(self) -> bool:
        if not self._client.is_connected():
            await self._client.connect()
        return bool(await self._client.is_user_authorized())

    async def request(self) -> bool:
        if self._authorizer is None:
            LOGGER.warning("Telegram session is not authorized; run `otpwatch login` first")
            return False
        await self._authorizer(self._client)
        return bool(await self._client.is_user_authorized())
