"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.errors import ConfigurationError, DeliveryError


@dataclass(frozen=True)
class Message:
    """A single inbox message as observed by a message source."""

    body: str
    received_at: datetime
    message_id: Optional[str] = None
    sender: Optional[str] = None


@dataclass(frozen=True)
class OtpCandidate:
    """An OTP value extracted from a message, consumed immediately."""

    value: str
    rule_name: str
    extracted_at: datetime
    source_message_id: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt; transport-level success only."""

    otp: str
    success: bool
    server_message: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[DeliveryError] = None


class MonitorState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    STOPPED = "stopped"


@dataclass(frozen=True)
class MonitorStatus:
    """Read-only snapshot handed to the presentation layer."""

    state: MonitorState
    last_otp: Optional[str]
    last_delivery: Optional[DeliveryResult]
    session_started_at: Optional[datetime]
    delivering: bool
    phone_number_configured: bool


def normalize_phone_number(value: Optional[str]) -> str:
    """Trim a user-supplied phone number; blank input means not configured."""

    if value is None:
        return ""
    return value.strip()


def require_phone_number(value: Optional[str]) -> str:
    """Return the trimmed phone number or raise if it is blank."""

    phone_number = normalize_phone_number(value)
    if not phone_number:
        raise ConfigurationError("Phone number is not configured")
    return phone_number
