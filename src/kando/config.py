"""Paths, constants, and data directory setup."""

import logging
import os
from pathlib import Path

# Base directories
PROJECT_ROOT = Path(__file__).parent.parent.parent


def _load_env() -> None:
    """Load .env file from project root if present. Existing env vars take priority."""
    env_file = PROJECT_ROOT / ".env"
    if not env_file.exists():
        return
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if not os.environ.get(key):
                os.environ[key] = value


_env_initialized = False


def init() -> None:
    """Load .env and set env-dependent constants. Safe to call multiple times."""
    global _env_initialized
    if _env_initialized:
        return
    _load_env()
    _init_env_vars()
    _env_initialized = True


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _init_env_vars() -> None:
    """Read environment variables into module-level constants."""
    global VK_URL, DEFAULT_PROJECT_ID, VAULT_PATH, CARDS_FOLDER, DEBUG
    global VK_REQUEST_TIMEOUT

    VK_URL = os.environ.get("KANDO_VK_URL", VK_URL)
    DEFAULT_PROJECT_ID = os.environ.get("KANDO_DEFAULT_PROJECT_ID", DEFAULT_PROJECT_ID)
    VAULT_PATH = Path(
        os.path.expanduser(os.environ.get("KANDO_VAULT_PATH", str(VAULT_PATH)))
    )
    CARDS_FOLDER = os.environ.get("KANDO_CARDS_FOLDER", CARDS_FOLDER)
    DEBUG = _env_flag("KANDO_DEBUG", DEBUG)
    try:
        VK_REQUEST_TIMEOUT = float(
            os.environ.get("KANDO_REQUEST_TIMEOUT", str(VK_REQUEST_TIMEOUT))
        )
    except (ValueError, TypeError):
        logging.getLogger(__name__).warning(
            "Invalid KANDO_REQUEST_TIMEOUT env var, keeping %ss", VK_REQUEST_TIMEOUT
        )


DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = DATA_DIR / "kando.db"
SETTINGS_PATH = DATA_DIR / "settings.yaml"

# --- Vibe Kanban service ---
VK_URL = "http://localhost:3000"
DEFAULT_PROJECT_ID = ""
VK_REQUEST_TIMEOUT = 30.0  # seconds, applies to every outbound request

# --- Vault ---
VAULT_PATH = Path(os.path.expanduser("~")) / "Obsidian"
CARDS_FOLDER = "Cards"

# --- Execution defaults ---
DEFAULT_EXECUTOR = "CLAUDE_CODE"
DEFAULT_VARIANT = "DEFAULT"
DEFAULT_BRANCH = "main"

# --- Behaviour toggles ---
AUTO_PUSH_ON_SAVE = False
AUTO_SYNC_STATUS = True
DEBUG = False

# --- Status poller ---
POLL_BASE_INTERVAL_SECONDS = 5.0
POLL_MAX_INTERVAL_SECONDS = 60.0
POLL_MAX_TRACKED_TASKS = 1000  # cap on remembered task states

# --- Daemon ---
DAEMON_PID_FILE = DATA_DIR / "daemon.pid"
DAEMON_LOG_FILE = DATA_DIR / "daemon.log"
DAEMON_HEARTBEAT_INTERVAL = 60  # seconds between heartbeat writes
REINDEX_INTERVAL_SECONDS = 300  # full vault rescan

# --- Vault watcher ---
VAULT_WATCHER_ENABLED = True
VAULT_WATCHER_IGNORE_PATTERNS: list[str] = []  # additional patterns beyond defaults


def ensure_data_dirs() -> None:
    """Create all required data directories if they don't exist."""
    init()
    DATA_DIR.mkdir(parents=True, exist_ok=True)
