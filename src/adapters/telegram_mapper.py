"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core monitor.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from telethon.tl.custom import Message as TelegramMessage

from core.models import Message


def sender_label(message: TelegramMessage) -> Optional[str]:
    """Return ``@username`` for the sending chat, else ``chat_id:<id>``."""

    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)

    if isinstance(username, str) and username:
        return f"@{username.lower()}"

    chat_id = getattr(message, "chat_id", None)
    if chat_id is None:
        return None
    return f"chat_id:{chat_id}"


def build_message(message: TelegramMessage) -> Message:
    """Build a core Message from a Telethon Message."""

    message_id = getattr(message, "id", None)
    received_at = getattr(message, "date", None) or datetime.now(timezone.utc)
    return Message(
        body=getattr(message, "raw_text", None) or "",
        received_at=received_at,
        message_id=str(message_id) if message_id is not None else None,
        sender=sender_label(message),
    )
