import os
from pathlib import Path

"""Global constants and path definitions for git-it.

This module defines the application identity, the filesystem layout for
runtime state (adhering to XDG standards where applicable), and the default
locations used when no explicit path is given on the command line.
"""

# --- Identity ---
APP_NAME = "git-it"
"""str: The human-readable application name, also used as the logger name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-it"
"""Path: The directory for runtime state data (logs, pid file)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

DEFAULT_CONFIG_FILE = Path("gitit.json")
"""Path: The configuration file looked up in the current working directory."""

# --- Logging ---
MAX_LOG_SIZE = 5 * 1024 * 1024
"""int: Max bytes for the daemon log file before rotation."""

LOG_BACKUP_COUNT = 5
"""int: Number of rotated log files kept next to the active one."""

# --- Process handling ---
KILL_GRACE_SECONDS = 3.0
"""float: Time a timed-out process group gets after SIGTERM before SIGKILL."""

REAP_TIMEOUT_SECONDS = 5.0
"""float: Time to wait for a SIGKILLed process to be reaped before giving up."""
