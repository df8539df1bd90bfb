"""Pydantic models for session metadata, history records and the program table."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Lifecycle states for a supervised pseudo-terminal session."""
    NOT_STARTED = "NOT_STARTED"
    STARTING = "STARTING"
    READY = "READY"
    EXITED = "EXITED"


class SessionMode(str, Enum):
    """How output is post-processed: chat transcript or raw terminal replay."""
    CHAT = "chat"
    TERMINAL = "terminal"

    @classmethod
    def parse(cls, value: str | SessionMode | None) -> SessionMode:
        """Anything other than ``terminal`` is treated as chat."""
        if value == cls.TERMINAL or value == cls.TERMINAL.value:
            return cls.TERMINAL
        return cls.CHAT


class EndedReason(str, Enum):
    """Why a session stopped; recorded on its history entry."""
    EXITED = "exited"
    STOPPED = "stopped"
    IDLE_TIMEOUT = "idle_timeout"
    LOGOUT = "logout"
    SHUTDOWN = "shutdown"
    RESTART = "restart"


class ChatMessage(BaseModel):
    """One transcript message."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float


class SessionFile(BaseModel):
    """A file attached to a live session."""
    path: str
    name: str
    added_at: float


class HistoryEntry(BaseModel):
    """Durable summary of a session, one per session id per owner."""
    session_id: str
    program: str
    variant: str = "default"
    mode: SessionMode = SessionMode.CHAT
    created_at: float
    ended_at: float | None = None
    title: str | None = None
    files_count: int = 0
    has_transcript: bool = True
    ended_reason: EndedReason | None = None

    def merged_with(self, other: HistoryEntry) -> HistoryEntry:
        """Return a copy where fields set on ``other`` override this entry."""
        updates = other.model_dump(exclude_none=True)
        return self.model_copy(update=updates)


class Transcript(BaseModel):
    """Full message log of a chat-mode session."""
    session_id: str
    program: str
    variant: str
    mode: SessionMode
    title: str | None = None
    created_at: float
    ended_at: float | None = None
    messages: list[ChatMessage] = Field(default_factory=list)


class LiveSessionRecord(BaseModel):
    """Minimal fields written to the live-sessions snapshot."""
    session_id: str
    owner: str
    program: str
    variant: str
    mode: SessionMode
    created_at: float
    title: str | None = None
    files_count: int = 0


class SessionSummary(BaseModel):
    """Live session metadata exposed to callers."""
    session_id: str
    owner: str
    program: str
    variant: str
    mode: SessionMode
    state: SessionState
    has_transcript: bool
    created_at: float
    last_activity_at: float
    title: str


class ProgramVariant(BaseModel):
    """Selectable execution flavor (usually a model) of a program."""
    id: str
    name: str
    flag: str | None = None


class ProgramSpec(BaseModel):
    """Static description of a wrapped interactive CLI program."""
    id: str
    name: str
    description: str = ""
    command: str
    args: list[str] = Field(default_factory=list)
    variants: list[ProgramVariant] = Field(default_factory=list)
    working_directory: str | None = None
    ready_signatures: list[str] = Field(default_factory=list)
    prompt_glyphs: list[str] = Field(default_factory=list)
    ready_timeout_seconds: float = 4.0
    # 0 disables simulated typing for chat input.
    paste_chunk_size: int = 0
    paste_chunk_delay_seconds: float = 0.02
    file_ref_prefix: str = "@"


class ProgramDescriptor(BaseModel):
    """Public view of a program returned by ``list_programs``."""
    id: str
    name: str
    description: str
    variants: list[ProgramVariant]
    file_ref_prefix: str
