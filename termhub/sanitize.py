"""Terminal output cleanup: escape stripping, control folding, noise filtering."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Protocol

ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|\x1b[PX^_][^\x1b]*\x1b\\"  # DCS / SOS / PM / APC strings
    r"|\x1b[ -/]*[0-OQ-WYZ\\`-~]"  # two-character and charset escapes
)
CR_RE = re.compile(r"\r+\n?")
SEGMENT_RE = re.compile(r"[^\n]*\n|[^\n]+$")

# Longest partial escape sequence carried over to the next chunk.
MAX_ESCAPE_CARRY = 256

BACKSPACES = ("\b", "\x7f")
INTERRUPT = "\x03"
INTERRUPT_MARKER = "^C"


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return ANSI_RE.sub("", text)


def _split_incomplete_escape(text: str) -> tuple[str, str]:
    idx = text.rfind("\x1b")
    if idx < 0:
        return text, ""
    tail = text[idx:]
    if ANSI_RE.match(tail) or len(tail) > MAX_ESCAPE_CARRY:
        return text, ""
    return text[:idx], tail


class EditableText(Protocol):
    def append(self, text: str) -> None: ...

    def delete_last_char(self) -> bool: ...


class StreamSanitizer:
    """Incremental cleaner for a terminal output stream.

    Escape sequences and CR/LF pairs split across chunks are carried over to
    the next call. Carriage returns fold to newlines, backspace and DEL
    delete the previous character on the current line, ETX renders as
    ``^C`` and every other non-printable character except newline and tab
    is dropped.
    """

    def __init__(self) -> None:
        self._carry = ""

    def feed(self, chunk: str, sink: EditableText | None = None) -> str:
        """Clean ``chunk`` and return the text it contributes.

        When ``sink`` is given the result is appended to it, and backspaces
        that reach past the start of this chunk delete from the sink.
        """
        text, carry = _split_incomplete_escape(self._carry + chunk)
        text = strip_ansi(text)
        if text.endswith("\r"):
            text = text.rstrip("\r")
            carry = "\r" + carry
        self._carry = carry
        text = CR_RE.sub("\n", text)

        out: list[str] = []
        for ch in text:
            if ch == "\n" or ch == "\t" or ch.isprintable():
                out.append(ch)
            elif ch in BACKSPACES:
                if out:
                    if out[-1] != "\n":
                        out.pop()
                elif sink is not None:
                    sink.delete_last_char()
            elif ch == INTERRUPT:
                out.append(INTERRUPT_MARKER)
        result = "".join(out)
        if sink is not None:
            sink.append(result)
        return result

    def flush(self) -> str:
        """End of stream: a held carriage return becomes a newline and any
        unfinished escape sequence is discarded."""
        held_cr = self._carry.startswith("\r")
        self._carry = ""
        return "\n" if held_cr else ""


def clean_text(text: str) -> str:
    """One-shot sanitization of a complete piece of terminal output."""
    sanitizer = StreamSanitizer()
    return sanitizer.feed(text) + sanitizer.flush()


DEFAULT_NOISE_PATTERNS: tuple[str, ...] = (
    r"deprecationwarning",
    r"\(node:\d+\)",
    r"--trace-deprecation",
    r"the `punycode` module is deprecated",
    r"^\s*loaded cached credentials\.?\s*$",
    r"^\s*data collection is disabled\.?\s*$",
    # Lines made only of box-drawing characters (framework banners, frames).
    r"^[\s─-╿▀-▟]+$",
)


class NoiseFilter:
    """Line-level filter for chat transcripts.

    Drops lines matching any of ``patterns`` (case-insensitive) and
    collapses runs of blank lines into one, including runs spanning several
    chunks. Lines are classified whole: an unterminated tail is held back
    until its newline arrives or :meth:`flush` is called. The pattern table
    is policy: pass a different one when a wrapped program changes its
    banners.
    """

    def __init__(self, patterns: Iterable[str] = DEFAULT_NOISE_PATTERNS) -> None:
        self._patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self._last_blank = True
        self._at_line_start = True
        self._partial = ""

    @property
    def has_partial(self) -> bool:
        return bool(self._partial)

    def is_noise(self, line: str) -> bool:
        return any(p.search(line) for p in self._patterns)

    def filter(self, text: str) -> str:
        text = self._partial + text
        self._partial = ""
        kept: list[str] = []
        for segment in SEGMENT_RE.findall(text):
            if not segment.endswith("\n"):
                self._partial = segment
                break
            kept.append(self._classify(segment))
        return "".join(kept)

    def flush(self) -> str:
        """Classify the held-back tail as if the line had ended."""
        partial, self._partial = self._partial, ""
        return self._classify(partial) if partial else ""

    def pending(self) -> str:
        """What :meth:`flush` would emit now, without consuming it."""
        if not self._partial.strip() or self.is_noise(self._partial):
            return ""
        return self._partial

    def _classify(self, segment: str) -> str:
        content = segment.rstrip("\n")
        complete = segment.endswith("\n")
        if not content.strip():
            if complete and not self._at_line_start:
                # Terminator of a line flushed before its newline.
                self._at_line_start = True
                return segment
            if self._last_blank:
                return ""
            if complete:
                self._last_blank = True
                self._at_line_start = True
            return segment
        if self.is_noise(content):
            return ""
        self._last_blank = False
        self._at_line_start = complete
        return segment
