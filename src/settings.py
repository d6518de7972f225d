"""Static configuration for otpwatch.

All user-editable settings (source, delivery endpoint, rules, logging) live
in a single JSON file for quick edits without touching Python. Secrets stay
in .env.
"""

import json
import os

from dotenv import load_dotenv

from core.rules_engine import DEFAULT_RULES_CONFIG

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Where to store the SQLite database holding the phone number.
DB_PATH = os.path.join(os.path.dirname(__file__), "otpwatch.db")

CONFIG_PATH = os.getenv("OTPWATCH_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


load_dotenv()

_CONFIG = _load_json_config()

# Message source: "poll" re-lists the sender chat, "push" subscribes to it.
_source = _CONFIG.get("source", {})
SOURCE_MODE = _source.get("mode", "poll")
SOURCE_SENDER = _source.get("sender", "")
SOURCE_BOX = _source.get("box", "inbox")
SOURCE_MAX_COUNT = int(_source.get("max_count", 1))
POLL_INTERVAL_SECONDS = float(_source.get("poll_interval_seconds", 5))

# The endpoint can be overridden from the environment for staging servers.
_delivery = _CONFIG.get("delivery", {})
ENDPOINT_URL = os.getenv("OTP_ENDPOINT_URL") or _delivery.get(
    "endpoint_url", "https://bhaktabhim.duckdns.org/otp/"
)

# None keeps the per-mode default (push stops after a delivery, poll keeps going).
_monitor = _CONFIG.get("monitor", {})
AUTO_STOP_ON_SUCCESS = _monitor.get("auto_stop_on_success")

# Rule order is priority order; an empty list falls back to the built-in set.
RULES_CONFIG = _CONFIG.get("rules") or DEFAULT_RULES_CONFIG

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
