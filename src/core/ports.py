"""Ports (interfaces) used by the core monitor.

Ports define the minimal contracts for the device inbox, phone number
storage, and OTP delivery so that the core can be reused with different
backends.
"""

from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, Protocol

from core.models import DeliveryResult, Message

MessageCallback = Callable[[Message], Awaitable[None]]


class InboxPort(Protocol):
    """Enumerates the most recent messages of a mailbox, newest first."""

    async def list(self, box: str, max_count: int) -> List[Message]:
        ...


class SubscriptionHandle(Protocol):
    def cancel(self) -> None:
        ...


class SubscriberPort(Protocol):
    """Delivers newly arrived messages through a callback."""

    def subscribe(self, on_event: MessageCallback) -> SubscriptionHandle:
        ...


class PermissionPort(Protocol):
    """Checks and requests access to the message store."""

    async def check(self) -> bool:
        ...

    async def request(self) -> bool:
        ...


class MessageSource(Protocol):
    """Capability set shared by push and poll sources."""

    async def start(self, on_message: MessageCallback) -> None:
        ...

    async def stop(self) -> None:
        ...


class KeyValueStore(Protocol):
    """Persistence used by the host for the configured phone number."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class OtpSink(Protocol):
    """Delivery operation required by the monitor.

    Implementations report failures inside the returned result and never
    raise.
    """

    async def send(self, phone_number: str, otp: str) -> DeliveryResult:
        ...
