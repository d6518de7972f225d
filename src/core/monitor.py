"""Core OTP monitoring session.

This module is integration-agnostic. It only relies on ports for the message
source and OTP delivery, enabling other hosts or adapters without changes
here.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.errors import ConfigurationError
from core.models import (
    DeliveryResult,
    Message,
    MonitorState,
    MonitorStatus,
    normalize_phone_number,
)
from core.ports import MessageSource, OtpSink
from core.rules_engine import PatternRuleSet

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[MonitorStatus], None]


class MonitorController:
    """Orchestrates extraction, deduplication, and delivery for one session.

    State machine::

        IDLE/STOPPED --start--> LISTENING --stop--> IDLE
        LISTENING --delivery succeeded, auto-stop--> STOPPED

    The dedup marker holds the last OTP value a delivery was dispatched for
    and is only cleared by ``stop()``.
    """

    def __init__(
        self,
        rule_set: PatternRuleSet,
        source: MessageSource,
        sink: OtpSink,
        phone_number: str = "",
        auto_stop_on_success: bool = False,
        status_listener: Optional[StatusListener] = None,
    ) -> None:
        self._rule_set = rule_set
        self._source = source
        self._sink = sink
        self._phone_number = normalize_phone_number(phone_number)
        self._auto_stop = auto_stop_on_success
        self._status_listener = status_listener

        self._state = MonitorState.IDLE
        self._session_id = 0
        self._session_started_at: Optional[datetime] = None
        self._last_delivered: Optional[str] = None
        self._last_otp: Optional[str] = None
        self._last_delivery: Optional[DeliveryResult] = None
        self._in_flight = 0
        self._delivery_lock = asyncio.Lock()
        self._lifecycle_lock = asyncio.Lock()

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def phone_number(self) -> str:
        return self._phone_number

    @property
    def last_delivered(self) -> Optional[str]:
        return self._last_delivered

    def configure_phone_number(self, value: Optional[str]) -> str:
        """Store a trimmed phone number; blank clears the configuration."""

        self._phone_number = normalize_phone_number(value)
        self._notify()
        return self._phone_number

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            state=self._state,
            last_otp=self._last_otp,
            last_delivery=self._last_delivery,
            session_started_at=self._session_started_at,
            delivering=self._in_flight > 0,
            phone_number_configured=bool(self._phone_number),
        )

    async def start(self) -> None:
        """Enter LISTENING; a no-op when a session is already active.

        Raises ConfigurationError when no phone number is configured and
        propagates source start errors. In both cases the state is unchanged.
        """

        # Starting may await an interactive permission request; overlapping
        # start/stop calls queue here instead of racing past the state check.
        async with self._lifecycle_lock:
            if self._state is MonitorState.LISTENING:
                return
            if not self._phone_number:
                raise ConfigurationError("Phone number is not configured")

            await self._source.start(self._on_message)

            self._session_id += 1
            self._session_started_at = datetime.now(timezone.utc)
            self._state = MonitorState.LISTENING
            LOGGER.info("Started listening (session %s)", self._session_id)
            self._notify()

    async def stop(self) -> None:
        """Stop the source and return to IDLE. Idempotent."""

        async with self._lifecycle_lock:
            await self._halt(MonitorState.IDLE)

    async def _halt(self, next_state: MonitorState) -> None:
        if self._state is MonitorState.LISTENING:
            await self._source.stop()
            # Results of sends still in flight are discarded once the session id moves on.
            self._session_id += 1
        self._last_delivered = None
        if self._state is next_state:
            return
        self._state = next_state
        LOGGER.info("Stopped listening (%s)", next_state.value)
        self._notify()

    async def handle(self, message: Message) -> Optional[DeliveryResult]:
        """Process one observed message; returns the delivery result, if any."""

        return await self._on_message(message)

    async def _on_message(self, message: Message) -> Optional[DeliveryResult]:
        if self._state is not MonitorState.LISTENING:
            return None

        candidate = self._rule_set.extract_candidate(message)
        if candidate is None:
            return None

        otp = candidate.value
        LOGGER.info(
            "OTP detected: %s from %s (rule %s)",
            otp,
            message.sender or "unknown sender",
            candidate.rule_name,
        )
        self._last_otp = otp

        # The marker is set on the attempt, before the first await, so an
        # identical OTP arriving while this send is pending is suppressed.
        if otp == self._last_delivered:
            LOGGER.info("Dedup skip for OTP %s (already dispatched this session)", otp)
            return None
        self._last_delivered = otp

        session_id = self._session_id
        phone_number = self._phone_number
        self._in_flight += 1
        self._notify()
        try:
            async with self._delivery_lock:
                if session_id != self._session_id:
                    LOGGER.info("Session ended before OTP %s was sent; dropping it", otp)
                    return None
                result = await self._sink.send(phone_number, otp)
        finally:
            self._in_flight -= 1

        if session_id != self._session_id:
            LOGGER.info("Ignoring delivery result for OTP %s from a finished session", otp)
            self._notify()
            return result

        self._last_delivery = result
        if result.success:
            LOGGER.info("OTP %s delivered", otp)
        else:
            LOGGER.warning("Delivery of OTP %s failed: %s", otp, result.error)
        self._notify()

        if result.success and self._auto_stop:
            await self._halt(MonitorState.STOPPED)
        return result

    def _notify(self) -> None:
        if self._status_listener is None:
            return
        try:
            self._status_listener(self.status())
        except Exception:
            LOGGER.exception("Status listener failed")
