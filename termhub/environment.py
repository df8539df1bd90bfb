"""Child process environment resolution.

The wrapped CLIs keep their login state under the service owner's home
directory, so children must see the same config/cache/data/state search
paths as the service itself. Resolution is a pure function of the base
environment and the home directory so it can be tested without touching
the real process environment.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping

EnvironmentResolver = Callable[[], dict[str, str]]

TERM_NAME = "xterm-256color"

# Credentials passed through verbatim when the service has them.
PASSTHROUGH_VARS = (
    "GOOGLE_APPLICATION_CREDENTIALS",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
)


def resolve_child_environment(base_env: Mapping[str, str], home: str) -> dict[str, str]:
    """Return the environment for a pseudo-terminal child.

    Args:
        base_env: The service's own environment (inherited as-is).
        home: Home directory holding the wrapped programs' credentials.
    """
    env = dict(base_env)
    env["HOME"] = home
    env["XDG_CONFIG_HOME"] = base_env.get("XDG_CONFIG_HOME") or os.path.join(home, ".config")
    env["XDG_DATA_HOME"] = base_env.get("XDG_DATA_HOME") or os.path.join(home, ".local", "share")
    env["XDG_CACHE_HOME"] = base_env.get("XDG_CACHE_HOME") or os.path.join(home, ".cache")
    env["XDG_STATE_HOME"] = base_env.get("XDG_STATE_HOME") or os.path.join(home, ".local", "state")
    for key in PASSTHROUGH_VARS:
        if base_env.get(key):
            env[key] = base_env[key]
    env["TERM"] = TERM_NAME
    # Headless server: never let a CLI try to open a browser for auth.
    env["NO_BROWSER"] = "true"
    env["BROWSER"] = "echo"
    env["GEMINI_CLI_NO_BROWSER"] = "1"
    return env


def default_resolver(home: str) -> EnvironmentResolver:
    """Resolver bound to the live ``os.environ`` and a fixed home directory."""

    def _resolve() -> dict[str, str]:
        return resolve_child_environment(os.environ, home)

    return _resolve
