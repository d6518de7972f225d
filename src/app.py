"""Application entry point for the otpwatch monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv
from telethon import TelegramClient

import settings
from adapters.http_delivery import DeliveryClient
from adapters.sqlite_storage import PHONE_NUMBER_KEY, SQLiteKeyValueStore
from adapters.status_formatting import format_status
from adapters.telegram_inbox import TelegramInbox, TelegramPermissions
from core.config import MonitorConfig, SourceConfig, resolve_auto_stop
from core.errors import ConfigurationError, SourceError
from core.models import MonitorState, MonitorStatus, normalize_phone_number, require_phone_number
from core.monitor import MonitorController
from core.ports import MessageSource
from core.rules_engine import PatternRuleSet
from core.sources import PollSource, PushSource
from telegram_session import authorize, build_client

NAME = "OTPWATCH"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict, extra: Optional[list[str]] = None) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = [value for value in (extra or []) if value]
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(extra_secrets: Optional[list[str]] = None) -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config, extra_secrets)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/otpwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _open_store() -> SQLiteKeyValueStore:
    store = SQLiteKeyValueStore(settings.DB_PATH)
    store.init_db()
    return store


def _source_config(mode_override: Optional[str]) -> SourceConfig:
    return SourceConfig(
        mode=mode_override or settings.SOURCE_MODE,
        sender=settings.SOURCE_SENDER,
        box=settings.SOURCE_BOX,
        max_count=settings.SOURCE_MAX_COUNT,
        poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
    )


def build_source(client: TelegramClient, config: SourceConfig) -> MessageSource:
    """Pick the push or poll source; the controller never sees the difference."""

    inbox = TelegramInbox(client, config.sender)
    permissions = TelegramPermissions(client, authorize)
    if config.mode == "push":
        return PushSource(inbox, permissions)
    return PollSource(
        inbox,
        permissions,
        interval=config.poll_interval_seconds,
        max_count=config.max_count,
        box=config.box,
    )


async def _monitor(
    client: TelegramClient,
    controller: MonitorController,
    delivery: DeliveryClient,
    finished: asyncio.Event,
) -> int:
    try:
        try:
            await controller.start()
        except (ConfigurationError, SourceError) as exc:
            LOGGER.error("Could not start listening: %s", exc)
            return 1

        LOGGER.info("Listening for OTP messages. Press Ctrl+C to stop.")
        waiters = {
            asyncio.ensure_future(client.disconnected),
            asyncio.ensure_future(finished.wait()),
        }
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()
        return 0
    finally:
        await controller.stop()
        await delivery.aclose()
        await client.disconnect()


def _run(mode_override: Optional[str] = None) -> int:
    _print_banner()
    store = _open_store()
    phone_number = normalize_phone_number(store.get(PHONE_NUMBER_KEY))
    _configure_logging([phone_number])

    LOGGER.info("Starting otpwatch")

    try:
        source_config = _source_config(mode_override)
        rule_set = PatternRuleSet.from_config(settings.RULES_CONFIG)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    monitor_config = MonitorConfig(
        auto_stop_on_success=resolve_auto_stop(source_config.mode, settings.AUTO_STOP_ON_SUCCESS)
    )
    LOGGER.info("%s rules are loaded", len(rule_set))
    LOGGER.info(
        "Selected source mode - %s (auto stop on success: %s)",
        source_config.mode,
        monitor_config.auto_stop_on_success,
    )

    try:
        client = build_client()
        source = build_source(client, source_config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    delivery = DeliveryClient(settings.ENDPOINT_URL)
    finished = asyncio.Event()

    def _on_status(status: MonitorStatus) -> None:
        LOGGER.info(format_status(status))
        if status.state is MonitorState.STOPPED:
            finished.set()

    controller = MonitorController(
        rule_set=rule_set,
        source=source,
        sink=delivery,
        phone_number=phone_number,
        auto_stop_on_success=monitor_config.auto_stop_on_success,
        status_listener=_on_status,
    )

    try:
        return client.loop.run_until_complete(_monitor(client, controller, delivery, finished))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, stopping")
        client.loop.run_until_complete(controller.stop())
        return 0


def _set_phone(value: str) -> int:
    try:
        phone_number = require_phone_number(value)
    except ConfigurationError:
        print("Validation Error: Please enter a phone number.")
        return 1
    _open_store().set(PHONE_NUMBER_KEY, phone_number)
    print(f"Phone number saved: {phone_number}")
    return 0


def _show_phone() -> int:
    phone_number = normalize_phone_number(_open_store().get(PHONE_NUMBER_KEY))
    print(f"Phone number: {phone_number or 'not configured'}")
    return 0


def _login() -> int:
    _print_banner()
    _configure_logging()
    try:
        client = build_client()
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    async def _run_login() -> None:
        await authorize(client)
        await client.disconnect()

    client.loop.run_until_complete(_run_login())
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="otpwatch")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Start listening for OTP messages")
    run_parser.add_argument("--mode", choices=["poll", "push"], help="Override source.mode")
    phone_parser = subparsers.add_parser("set-phone", help="Save the phone number sent with each OTP")
    phone_parser.add_argument("value")
    subparsers.add_parser("show-phone", help="Show the saved phone number")
    subparsers.add_parser("login", help="Authorize the Telegram session")

    args = parser.parse_args(argv)
    if args.command == "set-phone":
        raise SystemExit(_set_phone(args.value))
    if args.command == "show-phone":
        raise SystemExit(_show_phone())
    if args.command == "login":
        raise SystemExit(_login())
    raise SystemExit(_run(getattr(args, "mode", None)))


if __name__ == "__main__":
    main()
