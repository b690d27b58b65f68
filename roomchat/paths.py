"""
paths.py
────────
Central directory resolver for roomchat.
Reads roomchat_config.json for the data directory and falls back to
sensible defaults when the file is absent.

Layout:
    <data_dir>/                   ← DATA_DIR  (default ~/.roomchat)
        roomchat.db               ← STORAGE_DB  (per-room message logs)
        Logs/                     ← LOG_DIR
"""

import json
import sys
from pathlib import Path

ROOMCHAT_DIR = Path(__file__).parent   # …/roomchat/
ROOT_DIR     = ROOMCHAT_DIR.parent     # project root
HOME_DIR     = Path.home() / ".roomchat"

CONFIG_CANDIDATES = [
    ROOT_DIR     / "roomchat_config.json",   # beside the roomchat/ directory
    ROOMCHAT_DIR / "roomchat_config.json",   # inside the package
    HOME_DIR     / "config.json",            # user-home fallback
]

_cfg: dict = {}
for _cp in CONFIG_CANDIDATES:
    if _cp.exists():
        try:
            with open(_cp, encoding="utf-8") as _f:
                _cfg = json.load(_f)
            break
        except Exception as _e:
            print(f"[Paths]: could not parse {_cp}: {_e}", file=sys.stderr)

# ── Resolve directories (config overrides defaults) ──────────────────────────
DATA_DIR   = Path(_cfg.get("data_dir") or HOME_DIR).expanduser()
LOG_DIR    = DATA_DIR / "Logs"
STORAGE_DB = DATA_DIR / "roomchat.db"


def ensure_dirs() -> None:
    """Create the data and log folders.  Called once by the entry point."""
    for d in (DATA_DIR, LOG_DIR):
        try:
            d.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            print(
                f"[Paths Warning]: cannot create {d} — "
                "check permissions or set data_dir in roomchat_config.json",
                file=sys.stderr,
            )
