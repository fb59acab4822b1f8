import os
from pathlib import Path

"""Global constants and path definitions for git-sync-reloader.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and protocol constants shared by the sync engine, the
webhook listener and the reload notifiers.
"""

# --- Identity ---
APP_NAME = "git-sync-reloader"
"""str: The human-readable application name (also the logger name)."""

ENV_PREFIX = "GIT_SYNC_RELOADER_"
"""str: Prefix for environment variables that override configuration keys."""

REVISION_ENV_VAR = f"{ENV_PREFIX}REVISION"
"""str: Environment variable carrying the synced revision to reload commands."""

HASH_HEADER = "Gitsync-Hash"
"""str: HTTP header carrying a revision id (git-sync webhook convention)."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-sync-reloader"
"""Path: The directory for runtime state data (logs, pid, revision)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

REVISION_FILE = STATE_DIR / "revision.json"
"""Path: Default location of the persisted last-committed revision."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-sync-reloader"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The global configuration file path."""

# --- Mirror ---
MIRROR_IGNORES = frozenset({".git"})
"""frozenset[str]: Entry names never mirrored nor deleted, at any depth."""

TEMP_PREFIX = ".gsr-tmp-"
"""str: Prefix of temporary files written next to their destination."""
