"""Chat transcript reconstruction from raw program output."""

from __future__ import annotations

import time

from termhub.models import ChatMessage
from termhub.sanitize import NoiseFilter, StreamSanitizer

MAX_TRANSCRIPT_CHARS = 2_000_000
MAX_MESSAGES = 2000
KEEP_MESSAGES = 1500
TITLE_LENGTH = 40
UNTITLED = "New session"


def derive_title(text: str, variant: str) -> str:
    """Short session title from the first user message."""
    short = " ".join((text or "").split())[:TITLE_LENGTH]
    return f"{short or UNTITLED} · {variant}"


class TranscriptBuilder:
    """Builds the user/assistant message log of a chat-mode session.

    Assistant output is ignored until the first user message has been
    recorded, so shell start-up and program banners never reach the
    transcript. Consecutive output chunks extend one assistant message
    until the next user message.
    """

    def __init__(
        self,
        noise_filter: NoiseFilter | None = None,
        max_chars: int = MAX_TRANSCRIPT_CHARS,
    ) -> None:
        self.messages: list[ChatMessage] = []
        self.user_message_count = 0
        self._noise = noise_filter or NoiseFilter()
        self._sanitizer = StreamSanitizer()
        self._open: ChatMessage | None = None
        self._max_chars = max_chars
        self._total_chars = 0
        self._pending_at: float | None = None

    def add_user_message(self, text: str, timestamp: float | None = None) -> bool:
        """Record a user message. Returns True if it is the first one."""
        if timestamp is None:
            timestamp = time.time()
        self.flush(timestamp)
        message = ChatMessage(role="user", content=text, timestamp=timestamp)
        self.messages.append(message)
        self._total_chars += len(text)
        self.user_message_count += 1
        self._open = None
        if len(self.messages) > MAX_MESSAGES:
            dropped = self.messages[:-KEEP_MESSAGES]
            self.messages = self.messages[-KEEP_MESSAGES:]
            self._total_chars -= sum(len(m.content) for m in dropped)
        self._enforce_budget()
        return self.user_message_count == 1

    def add_output(self, chunk: str, timestamp: float | None = None) -> str:
        """Feed raw program output; returns the text added to the transcript."""
        cleaned = self._sanitizer.feed(chunk)
        if self.user_message_count == 0:
            return ""
        if timestamp is None:
            timestamp = time.time()
        started = self._pending_at if self._pending_at is not None else timestamp
        text = self._noise.filter(cleaned)
        if not self._noise.has_partial:
            self._pending_at = None
        elif "\n" in cleaned or self._pending_at is None:
            self._pending_at = timestamp
        return self._append(text, started)

    def flush(self, timestamp: float | None = None) -> str:
        """Commit an unterminated assistant line, e.g. before the next turn."""
        text = self._noise.flush()
        started = self._pending_at if self._pending_at is not None else timestamp
        self._pending_at = None
        if started is None:
            started = time.time()
        return self._append(text, started)

    def _append(self, text: str, timestamp: float) -> str:
        if not text:
            return ""
        if self._open is None:
            self._open = ChatMessage(
                role="assistant", content=text, timestamp=timestamp
            )
            self.messages.append(self._open)
        else:
            self._open.content += text
        self._total_chars += len(text)
        self._enforce_budget()
        return text

    def _enforce_budget(self) -> None:
        while self._total_chars > self._max_chars and len(self.messages) > 1:
            dropped = self.messages.pop(0)
            self._total_chars -= len(dropped.content)
            if dropped is self._open:
                self._open = None
        if self._total_chars > self._max_chars and self.messages:
            # A single oversized message keeps only its newest content.
            only = self.messages[0]
            only.content = only.content[-self._max_chars :]
            self._total_chars = len(only.content)

    @property
    def total_chars(self) -> int:
        return self._total_chars

    def snapshot(self) -> list[ChatMessage]:
        """Copy of the messages, including a held-back assistant line."""
        messages = [m.model_copy() for m in self.messages]
        tail = self._noise.pending()
        if not tail:
            return messages
        if self._open is not None and self.messages and self.messages[-1] is self._open:
            messages[-1].content += tail
        else:
            started = self._pending_at if self._pending_at is not None else time.time()
            messages.append(ChatMessage(role="assistant", content=tail, timestamp=started))
        return messages
