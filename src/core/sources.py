"""Push and poll message sources.

Both sources share one capability set (start/stop) so the monitor never
needs to know how messages are obtained.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.errors import FetchError, SourcePermissionError, SourceUnavailableError
from core.models import Message
from core.ports import InboxPort, MessageCallback, PermissionPort, SubscriberPort, SubscriptionHandle

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_COUNT = 1


async def ensure_permission(permissions: PermissionPort) -> None:
    """Check access, request it once if missing, and raise when refused."""

    try:
        if await permissions.check():
            return
        granted = await permissions.request()
    except Exception as exc:
        raise SourceUnavailableError(f"Permission check failed: {exc}") from exc
    if not granted:
        raise SourcePermissionError("Access to the message store was not granted")


def _log_poll_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Poll loop stopped unexpectedly", exc_info=exc)


class PushSource:
    """Forward every newly arrived message to the callback."""

    def __init__(self, subscriber: SubscriberPort, permissions: PermissionPort) -> None:
        self._subscriber = subscriber
        self._permissions = permissions
        self._handle: Optional[SubscriptionHandle] = None
        self._on_message: Optional[MessageCallback] = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    async def start(self, on_message: MessageCallback) -> None:
        if self._handle is not None:
            return

        await ensure_permission(self._permissions)
        if self._handle is not None:
            # A concurrent start subscribed while this one awaited permission.
            return
        self._on_message = on_message
        try:
            self._handle = self._subscriber.subscribe(self._dispatch)
        except Exception as exc:
            self._on_message = None
            raise SourceUnavailableError(f"Push registration failed: {exc}") from exc
        LOGGER.info("Push source subscribed")

    async def _dispatch(self, message: Message) -> None:
        callback = self._on_message
        if callback is None:
            return
        try:
            await callback(message)
        except Exception:
            LOGGER.exception("Error while handling pushed message")

    async def stop(self) -> None:
        handle, self._handle = self._handle, None
        self._on_message = None
        if handle is None:
            return
        handle.cancel()
        LOGGER.info("Push source unsubscribed")


class PollSource:
    """Re-enumerate the most recent messages on a fixed interval.

    Each tick fetches up to ``max_count`` messages and hands them to the
    callback newest first, one at a time. A failed fetch is logged and the
    next tick retries on its own.
    """

    def __init__(
        self,
        inbox: InboxPort,
        permissions: PermissionPort,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_count: int = DEFAULT_MAX_COUNT,
        box: str = "inbox",
    ) -> None:
        self._inbox = inbox
        self._permissions = permissions
        self._interval = interval
        self._max_count = max_count
        self._box = box
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, on_message: MessageCallback) -> None:
        if self._task is not None:
            return

        await ensure_permission(self._permissions)
        if self._task is not None:
            # A concurrent start launched the loop while this one awaited permission.
            return
        self._task = asyncio.get_running_loop().create_task(self._run(on_message))
        self._task.add_done_callback(_log_poll_exit)
        LOGGER.info("Poll source started (every %ss, max_count=%s)", self._interval, self._max_count)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            # Stopped from inside a tick; the cancellation lands at the next await.
            LOGGER.info("Poll source stopped")
            return
        if not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass
        LOGGER.info("Poll source stopped")

    async def _run(self, on_message: MessageCallback) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.tick(on_message)

    async def tick(self, on_message: MessageCallback) -> int:
        """Run one fetch and dispatch cycle; return the number of messages handled."""

        try:
            messages = await self._fetch()
        except FetchError as exc:
            LOGGER.warning("Inbox fetch failed: %s", exc)
            return 0

        for message in messages:
            try:
                await on_message(message)
            except Exception:
                LOGGER.exception("Error while handling polled message")
        return len(messages)

    async def _fetch(self) -> list[Message]:
        try:
            messages = await self._inbox.list(self._box, self._max_count)
            ordered = sorted(messages, key=lambda message: message.received_at, reverse=True)
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(str(exc) or exc.__class__.__name__) from exc
        return ordered[: self._max_count]
