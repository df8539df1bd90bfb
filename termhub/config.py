"""Layered ``.env`` configuration for termhub.

Sources, highest precedence first:

1. variables already set in the process environment
2. ``.env`` in the working directory
3. ``config.env`` in the termhub config directory

The config directory is ``$TERMHUB_CONFIG_DIR`` when set, otherwise
``$XDG_CONFIG_HOME/termhub`` (``~/.config/termhub``). It is resolved from
the process environment only, since it decides which files are read.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_FILE = "config.env"
LOCAL_FILE = ".env"

_ASSIGNMENT = re.compile(
    r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*)$"
)
_INLINE_COMMENT = re.compile(r"(?:^|\s+)#.*$")


@dataclass
class LoadedConfig:
    """What :func:`load_config` did to the environment."""

    files: list[Path] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    shadowed: list[str] = field(default_factory=list)


def _xdg_dir(variable: str, *fallback: str) -> Path:
    base = os.environ.get(variable, "").strip()
    return Path(base) if base else Path.home().joinpath(*fallback)


def config_dir() -> Path:
    override = os.environ.get("TERMHUB_CONFIG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / "termhub"


def data_dir_default() -> Path:
    """Default data directory, ``$XDG_DATA_HOME/termhub``."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share") / "termhub"


def config_sources() -> list[Path]:
    """Candidate config files, lowest precedence first."""
    return [config_dir() / CONFIG_FILE, Path.cwd() / LOCAL_FILE]


def parse_env_file(path: str | Path) -> dict[str, str]:
    """Read ``KEY=value`` pairs from ``path``.

    Accepts an optional ``export`` prefix and single or double quotes.
    Unquoted values lose a trailing ``# comment``. A missing or unreadable
    file yields no values.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return {}

    result: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _ASSIGNMENT.match(line)
        if match is None:
            continue
        value = match.group("value")
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        else:
            value = _INLINE_COMMENT.sub("", value)
        result[match.group("key")] = value
    return result


def load_config() -> LoadedConfig:
    """Apply config files to ``os.environ`` without overriding set variables.

    Must run before anything reads :mod:`termhub.settings`.
    """
    loaded = LoadedConfig()
    merged: dict[str, str] = {}
    for path in config_sources():
        values = parse_env_file(path)
        if values:
            loaded.files.append(path)
            merged.update(values)

    for key, value in merged.items():
        if key in os.environ:
            loaded.shadowed.append(key)
            continue
        os.environ[key] = value
        loaded.applied.append(key)
    return loaded
