"""Telegram session handling for otpwatch.

The logged-in Telethon session is what gives otpwatch access to the inbox
chat. This module builds the client from credentials kept in ``.env`` and
runs the interactive login (QR code or phone code) when the session is not
authorized yet.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from getpass import getpass
from typing import Callable, Mapping, Optional

import qrcode
from dotenv import load_dotenv
from telethon import TelegramClient, errors

from core.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "otpwatch"
LOGIN_METHODS = ("qr", "phone")
QR_LOGIN_TIMEOUT = 120

Prompt = Callable[[str], str]


@dataclass(frozen=True)
class TelegramCredentials:
    api_id: int
    api_hash: str
    session_name: str = DEFAULT_SESSION_NAME


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> TelegramCredentials:
    """Read API_ID, API_HASH and SESSION_NAME; ``.env`` is loaded when no mapping is given."""

    if environ is None:
        load_dotenv()
        environ = os.environ

    api_id = (environ.get("API_ID") or "").strip()
    api_hash = (environ.get("API_HASH") or "").strip()
    if not api_id or not api_hash:
        raise ConfigurationError("Missing API_ID or API_HASH in environment")
    if not api_id.isdigit():
        raise ConfigurationError(f"API_ID must be numeric, got {api_id!r}")

    session_name = (environ.get("SESSION_NAME") or "").strip() or DEFAULT_SESSION_NAME
    return TelegramCredentials(api_id=int(api_id), api_hash=api_hash, session_name=session_name)


def build_client(credentials: Optional[TelegramCredentials] = None) -> TelegramClient:
    credentials = credentials or load_credentials()
    LOGGER.info("Initializing Telegram client (session %s)", credentials.session_name)
    return TelegramClient(credentials.session_name, credentials.api_id, credentials.api_hash)


def _print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


class Login:
    """One interactive login attempt.

    Answers come from the environment first (LOGIN_METHOD, PHONE, 2FA) and
    from ``ask`` otherwise, so unattended hosts can log in from ``.env``.
    """

    def __init__(
        self,
        client: TelegramClient,
        environ: Optional[Mapping[str, str]] = None,
        ask: Prompt = input,
        ask_secret: Prompt = getpass,
    ) -> None:
        self._client = client
        self._environ = os.environ if environ is None else environ
        self._ask = ask
        self._ask_secret = ask_secret

    def pick_method(self) -> str:
        method = (self._environ.get("LOGIN_METHOD") or "").strip().lower()
        if method in LOGIN_METHODS:
            return method
        while True:
            print("")
            print("Login methods:")
            print("[1] QR code")
            print("[2] Phone code")
            print("[3] Exit")
            choice = self._ask("otpwatch > ").strip()
            if choice == "1":
                return "qr"
            if choice == "2":
                return "phone"
            if choice == "3":
                raise SystemExit(0)
            print("Invalid option. Please choose 1, 2, or 3.")

    def _password(self) -> str:
        return self._environ.get("2FA") or self._ask_secret("2FA password: ")

    async def _with_qr(self) -> None:
        qr = await self._client.qr_login()
        _print_qr(qr.url)
        await qr.wait(timeout=QR_LOGIN_TIMEOUT)

    async def _with_phone(self) -> None:
        phone = self._environ.get("PHONE") or self._ask("Telegram phone number (international format): ").strip()
        await self._client.send_code_request(phone)
        code = self._ask("Login code: ").strip()
        await self._client.sign_in(phone=phone, code=code)

    async def run(self) -> None:
        if not self._client.is_connected():
            await self._client.connect()
        if await self._client.is_user_authorized():
            return

        try:
            if self.pick_method() == "phone":
                await self._with_phone()
            else:
                await self._with_qr()
        except errors.SessionPasswordNeededError:
            await self._client.sign_in(password=self._password())

        me = await self._client.get_me()
        LOGGER.info("Logged in as: %s", getattr(me, "first_name", None) or getattr(me, "id", "unknown"))


async def authorize(client: TelegramClient) -> None:
    """Log the session in unless it is already authorized."""

    await Login(client).run()
