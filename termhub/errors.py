"""Exception types raised by the session manager."""

from __future__ import annotations


class TermhubError(Exception):
    """Base class for errors surfaced to callers of the registry."""

    code = "TERMHUB_ERROR"


class ConfigurationError(TermhubError):
    """Unknown program or variant; raised before any state is created."""

    code = "UNKNOWN_PROGRAM"


class SessionNotFoundError(TermhubError):
    """Operation on an unknown or already-destroyed session id."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ProcessSpawnError(TermhubError):
    """The pseudo-terminal process could not be created."""

    code = "SPAWN_FAILED"
