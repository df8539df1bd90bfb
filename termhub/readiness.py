"""Readiness detection: when is a wrapped program accepting input?

The programs never announce readiness, so the detector watches their output
for known prompt chrome and falls back to a timer when the chrome is missed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import structlog

from termhub.models import ProgramSpec, SessionState
from termhub.sanitize import StreamSanitizer

logger = structlog.get_logger(__name__)

ReadinessProbe = Callable[[str], bool]

WINDOW_CHARS = 4096
# Frame characters around a prompt glyph, e.g. "│ > " in a boxed input line.
PROMPT_FRAME_CHARS = " \t│┃|╭╮╰╯─━"


def signature_probe(signatures: Iterable[str], prompt_glyphs: Iterable[str] = ()) -> ReadinessProbe:
    """Build a probe from substrings and bare prompt glyphs.

    The probe receives the de-escaped, case-folded output window and matches
    when any signature occurs in it, or when its last non-empty line is one
    of the prompt glyphs (ignoring frame characters).
    """
    folded = [s.casefold() for s in signatures if s]
    glyphs = {g.casefold() for g in prompt_glyphs if g}

    def _probe(window: str) -> bool:
        if any(sig in window for sig in folded):
            return True
        if not glyphs:
            return False
        for line in reversed(window.split("\n")):
            bare = line.strip(PROMPT_FRAME_CHARS)
            if bare:
                return bare in glyphs
        return False

    return _probe


def probe_for(program: ProgramSpec) -> ReadinessProbe:
    return signature_probe(program.ready_signatures, program.prompt_glyphs)


class ReadinessDetector:
    """State machine NOT_STARTED -> STARTING -> READY, EXITED from anywhere.

    ``begin`` is called when the start command is written and arms the
    fallback timer. Output fed while STARTING is checked against the probe.
    A probe match and the timer expiring converge on the same transition,
    which fires ``on_ready`` exactly once. EXITED is terminal.
    """

    def __init__(
        self,
        probe: ReadinessProbe,
        on_ready: Callable[[str], None],
        *,
        session_id: str = "",
    ) -> None:
        self.state = SessionState.NOT_STARTED
        self._probe = probe
        self._on_ready = on_ready
        self._session_id = session_id
        self._sanitizer = StreamSanitizer()
        self._window = ""
        self._timer: asyncio.TimerHandle | None = None

    def begin(self, fallback_seconds: float) -> None:
        if self.state != SessionState.NOT_STARTED:
            return
        self.state = SessionState.STARTING
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, fallback_seconds), self._on_timeout)

    def feed(self, chunk: str) -> None:
        if self.state != SessionState.STARTING:
            return
        cleaned = self._sanitizer.feed(chunk).casefold()
        self._window = (self._window + cleaned)[-WINDOW_CHARS:]
        try:
            matched = self._probe(self._window)
        except Exception:
            logger.exception("Readiness probe failed", session_id=self._session_id)
            matched = False
        if matched:
            self._become_ready("signature")

    def _on_timeout(self) -> None:
        self._timer = None
        if self.state == SessionState.STARTING:
            self._become_ready("timeout")

    def _become_ready(self, trigger: str) -> None:
        if self.state != SessionState.STARTING:
            return
        self.state = SessionState.READY
        self._cancel_timer()
        self._window = ""
        logger.info("Session ready", session_id=self._session_id, trigger=trigger)
        self._on_ready(trigger)

    def exit(self) -> None:
        self._cancel_timer()
        self.state = SessionState.EXITED

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def ready(self) -> bool:
        return self.state == SessionState.READY
