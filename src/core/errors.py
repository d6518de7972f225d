"""Error taxonomy shared by the core and its adapters."""

from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for every otpwatch error."""


class ConfigurationError(MonitorError):
    """Raised when required configuration is missing or invalid."""


class SourceError(MonitorError):
    """Base class for message source failures."""


class SourcePermissionError(SourceError):
    """Access to the message store was not granted."""


class SourceUnavailableError(SourceError):
    """The underlying message mechanism could not be initialized."""


class FetchError(SourceError):
    """A single poll attempt failed."""


class DeliveryError(MonitorError):
    """Base class for failed OTP deliveries."""


class NetworkError(DeliveryError):
    """The request never produced an HTTP response."""


class ServerError(DeliveryError):
    """The endpoint answered with an error status."""

    def __init__(self, status: int, body: Optional[str] = None) -> None:
        super().__init__(f"Server responded with status {status}")
        self.status = status
        self.body = body
