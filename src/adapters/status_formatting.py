"""Shared status formatting helpers.

Keeping formatting here prevents drift between the CLI log lines and any
other surface that renders monitor snapshots.
"""

from __future__ import annotations

from typing import List

from core.models import DeliveryResult, MonitorState, MonitorStatus

_STATE_LABELS = {
    MonitorState.IDLE: "Stopped",
    MonitorState.LISTENING: "Listening...",
    MonitorState.STOPPED: "Stopped after delivery",
}


def format_state(state: MonitorState) -> str:
    return f"Status: {_STATE_LABELS[state]}"


def format_delivery(result: DeliveryResult) -> str:
    """Return a one-line description of a delivery outcome."""

    if result.success:
        return f"Latest OTP: {result.otp}"
    reason = str(result.error) if result.error else "unknown error"
    return f"Error sending OTP {result.otp} to server: {reason}"


def format_status_lines(status: MonitorStatus) -> List[str]:
    """Render a snapshot as the lines a status panel would show."""

    lines = [format_state(status.state)]
    if not status.phone_number_configured:
        lines.append("Phone number: not configured")
    if status.session_started_at is not None and status.state is MonitorState.LISTENING:
        started = status.session_started_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()
        lines.append(f"Since: {started}")
    if status.delivering and status.last_otp:
        lines.append(f"Checking received OTP {status.last_otp}")
    elif status.last_delivery is not None:
        lines.append(format_delivery(status.last_delivery))
    return lines


def format_status(status: MonitorStatus) -> str:
    return " | ".join(format_status_lines(status))
