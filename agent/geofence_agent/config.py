"""
Paths, logging setup, config load/save, safe_print.
"""

import os
import json
import sys
import logging
from pathlib import Path


# ─── Paths ───────────────────────────────────────────────────────
# One config/outbox per user per machine. GEOFENCE_AGENT_HOME overrides
# the location (used by tests and side-by-side installs).

def _base_dir():
    override = os.environ.get("GEOFENCE_AGENT_HOME")
    if override:
        return Path(override)
    return Path.home() / ".geofence-agent"


BASE_DIR = _base_dir()

CONFIG_FILE = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "agent.log"
OUTBOX_FILE = BASE_DIR / "outbox.jsonl"
SAMPLE_FEED_FILE = BASE_DIR / "samples.jsonl"

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


# ─── Safe print (no crash without a console) ─────────────────────

def safe_print(*args, **kwargs):
    try:
        print(*args, **kwargs)
    except Exception:
        pass


# ─── Logging ─────────────────────────────────────────────────────

log = logging.getLogger("geofence")


def setup_logging(level=logging.INFO):
    """Attach the file + console handlers. Safe to call more than once."""
    if log.handlers:
        return log

    BASE_DIR.mkdir(parents=True, exist_ok=True)
    try:
        if LOG_FILE.exists() and LOG_FILE.stat().st_size > 1_000_000:
            LOG_FILE.write_text("")
    except OSError:
        pass

    file_handler = logging.FileHandler(str(LOG_FILE), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    log.addHandler(console_handler)

    log.setLevel(level)
    return log


# ─── Config Management ──────────────────────────────────────────

def load_config(path=None):
    """Load config from disk. Returns dict or None."""
    path = Path(path) if path else CONFIG_FILE
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return None
    return None


def save_config(config, path=None):
    """Save config dict to disk."""
    path = Path(path) if path else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)
    log.info("Config saved to %s", path)


def require_keys(config, *keys):
    """Return the config back, or raise ValueError naming the missing keys."""
    missing = [k for k in keys if not config.get(k)]
    if missing:
        raise ValueError(f"Config is missing: {', '.join(missing)}")
    return config
