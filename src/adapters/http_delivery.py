"""HTTP delivery adapter for extracted OTPs.

Posts the OTP and the configured phone number to the verification endpoint.
Implements the core OtpSink port.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.errors import NetworkError, ServerError
from core.models import DeliveryResult

LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT_URL = "https://bhaktabhim.duckdns.org/otp/"


class DeliveryClient:
    """Send one POST per OTP; failures come back as results, never raised."""

    def __init__(self, endpoint_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._endpoint_url = endpoint_url
        self._client = client
        self._owns_client = client is None

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # httpx's default timeout applies; no retry is layered on top.
            self._client = httpx.AsyncClient()
        return self._client

    async def send(self, phone_number: str, otp: str) -> DeliveryResult:
        """POST ``{"phone_number", "otp_secret"}`` and report the transport outcome."""

        payload = {"phone_number": phone_number, "otp_secret": otp}
        LOGGER.info("Sending OTP %s to %s", otp, self._endpoint_url)
        try:
            response = await self._get_client().post(
                self._endpoint_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            error = NetworkError(f"{exc.__class__.__name__}: {exc}")
            LOGGER.error("Error sending OTP %s: %s", otp, error)
            return DeliveryResult(otp=otp, success=False, error=error)

        body = response.text
        if response.status_code >= 400:
            error = ServerError(response.status_code, body)
            LOGGER.error("Error sending OTP %s: %s", otp, error)
            return DeliveryResult(
                otp=otp,
                success=False,
                server_message=body or None,
                status_code=response.status_code,
                error=error,
            )

        LOGGER.debug("Server response: %s", body)
        return DeliveryResult(
            otp=otp,
            success=True,
            server_message=body or None,
            status_code=response.status_code,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
