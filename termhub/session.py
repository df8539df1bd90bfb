"""Per-session runtime state held by the registry."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from termhub.buffer import RollingTail
from termhub.delivery import InputDelivery
from termhub.models import (
    HistoryEntry,
    LiveSessionRecord,
    SessionFile,
    SessionMode,
    SessionState,
    SessionSummary,
    Transcript,
)
from termhub.readiness import ReadinessDetector
from termhub.sanitize import StreamSanitizer
from termhub.terminal import ProcessHandle
from termhub.transcript import TranscriptBuilder

Subscriber = Callable[[str], None]
CloseCallback = Callable[[str], None]


@dataclass
class Subscription:
    """A viewer attached to a session's output."""

    callback: Subscriber
    on_close: CloseCallback | None = None


@dataclass
class Session:
    """Runtime state of one supervised program (not persisted as such)."""

    id: str
    owner: str
    program: str
    variant: str
    mode: SessionMode
    created_at: float
    title: str
    last_activity_at: float = 0.0
    files: list[SessionFile] = field(default_factory=list)
    subscribers: list[Subscription] = field(default_factory=list)
    raw_tail: RollingTail = field(default_factory=RollingTail)
    replay_tail: RollingTail = field(default_factory=RollingTail)
    replay_sanitizer: StreamSanitizer = field(default_factory=StreamSanitizer)
    transcript: TranscriptBuilder = field(default_factory=TranscriptBuilder)
    readiness: ReadinessDetector | None = None
    delivery: InputDelivery | None = None
    process: ProcessHandle | None = None
    start_timer: asyncio.TimerHandle | None = None
    history_saved: bool = False
    exit_code: int | None = None
    on_output: Subscriber | None = None
    on_exit: Callable[[int | None], None] | None = None

    def __post_init__(self) -> None:
        if not self.last_activity_at:
            self.last_activity_at = self.created_at

    @property
    def state(self) -> SessionState:
        if self.readiness is None:
            return SessionState.NOT_STARTED
        return self.readiness.state

    @property
    def has_transcript(self) -> bool:
        return self.mode != SessionMode.TERMINAL

    def touch(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        if now > self.last_activity_at:
            self.last_activity_at = now

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.id,
            owner=self.owner,
            program=self.program,
            variant=self.variant,
            mode=self.mode,
            state=self.state,
            has_transcript=self.has_transcript,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            title=self.title,
        )

    def history_entry(self, **updates) -> HistoryEntry:
        entry = HistoryEntry(
            session_id=self.id,
            program=self.program,
            variant=self.variant,
            mode=self.mode,
            created_at=self.created_at,
            title=self.title,
            files_count=len(self.files),
            has_transcript=self.has_transcript,
        )
        return entry.model_copy(update=updates) if updates else entry

    def live_record(self) -> LiveSessionRecord:
        return LiveSessionRecord(
            session_id=self.id,
            owner=self.owner,
            program=self.program,
            variant=self.variant,
            mode=self.mode,
            created_at=self.created_at,
            title=self.title,
            files_count=len(self.files),
        )

    def transcript_record(self, ended_at: float | None = None) -> Transcript:
        return Transcript(
            session_id=self.id,
            program=self.program,
            variant=self.variant,
            mode=self.mode,
            title=self.title,
            created_at=self.created_at,
            ended_at=ended_at,
            messages=self.transcript.snapshot(),
        )
