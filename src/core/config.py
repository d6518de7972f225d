"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.errors import ConfigurationError

SOURCE_MODES = ("poll", "push")


@dataclass(frozen=True)
class SourceConfig:
    """How messages are obtained from the inbox."""

    mode: str
    sender: str
    box: str = "inbox"
    max_count: int = 1
    poll_interval_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.mode not in SOURCE_MODES:
            raise ConfigurationError(f"source.mode must be one of {SOURCE_MODES}, got {self.mode!r}")
        if not self.sender:
            raise ConfigurationError("source.sender is required")
        if self.sender.startswith("chat_id:"):
            chat_id = self.sender[len("chat_id:") :]
            if not chat_id.lstrip("-").isdigit():
                raise ConfigurationError(f"source.sender chat id must be an integer, got {chat_id!r}")
        if self.max_count < 1:
            raise ConfigurationError("source.max_count must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("source.poll_interval_seconds must be positive")


@dataclass(frozen=True)
class MonitorConfig:
    """Session policy for the monitor controller."""

    auto_stop_on_success: bool


def resolve_auto_stop(mode: str, configured: Optional[bool]) -> bool:
    """Return the auto-stop policy, falling back to the per-mode default.

    Push sessions stop after their first successful delivery unless told
    otherwise; poll sessions keep listening.
    """

    if configured is not None:
        return bool(configured)
    return mode == "push"
