"""Centralized environment configuration for termhub.

All environment variables are read through this module using the TERMHUB_
prefix for consistency.

Usage:
    from termhub.settings import settings

    timeout = settings.idle_timeout_seconds()
    history_dir = settings.history_dir()
"""

from __future__ import annotations

import os


def _get(name: str, default: str = "") -> str:
    """Get an environment variable value."""
    return os.environ.get(name, "").strip() or default


def _get_int(name: str, default: int = 0) -> int:
    """Get an integer environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(name: str, default: float = 0.0) -> float:
    """Get a float environment variable."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Settings:
    """Centralized settings for termhub.

    Environment variables use the TERMHUB_ prefix.
    """

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    @staticmethod
    def data_dir() -> str:
        """Directory for persistent data (history, transcripts, snapshot).

        Env: TERMHUB_DATA_DIR (default: XDG_DATA_HOME/termhub)
        """
        value = _get("TERMHUB_DATA_DIR")
        if value:
            return os.path.abspath(value)

        from termhub.config import data_dir_default

        return str(data_dir_default())

    @staticmethod
    def history_dir() -> str:
        """Directory holding per-owner history indexes and transcripts.

        Env: TERMHUB_HISTORY_DIR (default: <data_dir>/history)
        """
        value = _get("TERMHUB_HISTORY_DIR")
        if value:
            return os.path.abspath(value)
        return os.path.join(Settings.data_dir(), "history")

    @staticmethod
    def history_limit() -> int:
        """Number of history entries kept per owner.

        Env: TERMHUB_HISTORY_LIMIT (default: 50)
        """
        return _get_int("TERMHUB_HISTORY_LIMIT", default=50)

    # -------------------------------------------------------------------------
    # Process Settings
    # -------------------------------------------------------------------------

    @staticmethod
    def shell() -> str:
        """Shell launched inside each pseudo-terminal.

        Env: TERMHUB_SHELL (default: bash)
        """
        return _get("TERMHUB_SHELL", default="bash")

    @staticmethod
    def home_dir() -> str:
        """Home directory whose credentials the wrapped programs inherit.

        Env: TERMHUB_HOME (default: $HOME, then /root)
        """
        return _get("TERMHUB_HOME") or _get("HOME", default="/root")

    @staticmethod
    def programs_file() -> str:
        """Optional JSON file replacing the built-in program table.

        Env: TERMHUB_PROGRAMS_FILE
        """
        return _get("TERMHUB_PROGRAMS_FILE")

    @staticmethod
    def start_delay_seconds() -> float:
        """Delay between spawning the shell and writing the program command.

        Env: TERMHUB_START_DELAY_SECONDS (default: 0.5)
        """
        return _get_float("TERMHUB_START_DELAY_SECONDS", default=0.5)

    # -------------------------------------------------------------------------
    # Idle Reaping
    # -------------------------------------------------------------------------

    @staticmethod
    def idle_timeout_seconds() -> float:
        """Seconds of inactivity before a session is destroyed. 0 disables.

        Env: TERMHUB_IDLE_TIMEOUT_SECONDS (default: 1800)
        """
        return _get_float("TERMHUB_IDLE_TIMEOUT_SECONDS", default=1800.0)

    @staticmethod
    def reap_interval_seconds() -> float:
        """Interval between idle sweeps.

        Env: TERMHUB_REAP_INTERVAL_SECONDS (default: 60)
        """
        return _get_float("TERMHUB_REAP_INTERVAL_SECONDS", default=60.0)

    # -------------------------------------------------------------------------
    # Logging Settings
    # -------------------------------------------------------------------------

    @staticmethod
    def log_level() -> str:
        """Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).

        Env: TERMHUB_LOG_LEVEL (default: INFO)
        """
        return _get("TERMHUB_LOG_LEVEL", default="INFO").upper()

    @staticmethod
    def log_format() -> str:
        """Log format: "console" for dev-friendly, "json" for structured.

        Env: TERMHUB_LOG_FORMAT (default: console)
        """
        return _get("TERMHUB_LOG_FORMAT", default="console").lower()


# Singleton instance for convenient imports
settings = Settings()
