# ══════════════════════════════════════════════════════════════════════════════
#  roomchat_config.py
#  Auto-loaded from roomchat_config.json when one is present.
#  Environment variables (ROOMCHAT_*) win over the file, the file wins over
#  the built-in defaults below.
# ══════════════════════════════════════════════════════════════════════════════

import json
import os
import sys
from pathlib import Path

from paths import CONFIG_CANDIDATES

# ── Built-in defaults (used when no config file is found) ─────────────────────
_DEFAULTS: dict = {
    # ── Server ────────────────────────────────────────────────────────────────
    "ws_url":                 "ws://localhost:8080",
    "open_timeout":           8.0,       # seconds for the WS opening handshake
    "ping_interval":          25.0,      # keep-alive ping period, None = off
    "ping_timeout":           10.0,

    # ── Identity ──────────────────────────────────────────────────────────────
    "username":               "Guest",   # placeholder identity
    "room_id":                None,      # None = no room joined at start-up

    # ── Storage / logging ─────────────────────────────────────────────────────
    "data_dir":               None,      # None = ~/.roomchat
    "log_level":              "INFO",

    # ── Text ──────────────────────────────────────────────────────────────────
    "max_message_len":        8192,
}

# env var → config key
_ENV_OVERRIDES = {
    "ROOMCHAT_WS_URL":    "ws_url",
    "ROOMCHAT_USERNAME":  "username",
    "ROOMCHAT_LOG_LEVEL": "log_level",
}


def load_config(candidates=None, environ=None) -> dict:
    """
    Build the effective configuration.

    The first candidate file that exists and parses is merged over the
    defaults; a file that fails to parse is reported and skipped.
    """
    candidates = CONFIG_CANDIDATES if candidates is None else candidates
    environ    = os.environ if environ is None else environ

    data = dict(_DEFAULTS)
    for config_path in candidates:
        if Path(config_path).exists():
            try:
                with open(config_path, encoding="utf-8") as _f:
                    loaded = json.load(_f)
                if not isinstance(loaded, dict):
                    raise ValueError("top level must be a JSON object")
                data.update(loaded)
                break
            except (OSError, ValueError) as parse_error:
                print(f"[Config Warning]: could not parse {config_path}: {parse_error}",
                      file=sys.stderr)

    for env_name, key in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            data[key] = value
    return data


config_data = load_config()

# ── Public API ────────────────────────────────────────────────────────────────

# Server
WS_URL            = str(config_data["ws_url"])
OPEN_TIMEOUT      = float(config_data["open_timeout"])
PING_INTERVAL     = (None if config_data["ping_interval"] is None
                     else float(config_data["ping_interval"]))
PING_TIMEOUT      = float(config_data["ping_timeout"])

# Identity
DEFAULT_USERNAME  = str(config_data["username"]).strip() or "Guest"
DEFAULT_ROOM_ID   = config_data["room_id"] or None

# Logging
LOG_LEVEL         = str(config_data["log_level"]).upper()

# Text
MAX_MESSAGE_LEN   = int(config_data["max_message_len"])

if not WS_URL.startswith(("ws://", "wss://")):
    print(
        f"[Config Warning]: ws_url {WS_URL!r} is not a ws:// or wss:// URL.\n"
        "  Edit roomchat_config.json or set ROOMCHAT_WS_URL.",
        file=sys.stderr,
    )
