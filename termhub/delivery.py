"""Input queueing and paced delivery to a pseudo-terminal."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

PENDING_HIGH_WATERMARK = 200
PENDING_KEEP = 120
CHAT_TERMINATOR = "\r"


@dataclass
class PendingInput:
    """One chunk of input waiting for delivery."""

    data: str | bytes
    paced: bool = False


def split_chunks(text: str, size: int) -> list[str]:
    if size <= 0 or len(text) <= size:
        return [text]
    return [text[i : i + size] for i in range(0, len(text), size)]


class InputDelivery:
    """Delivers input to a process in submission order.

    Before readiness everything is buffered (bounded: beyond the high
    watermark only the newest entries are kept). After readiness unpaced
    input is written directly; paced input is written in fixed-size chunks
    with a delay between them by a background task that checks
    ``is_alive`` before every write. Input submitted while a paced sequence
    is still running waits behind it.
    """

    def __init__(
        self,
        write: Callable[[str | bytes], None],
        is_alive: Callable[[], bool],
        *,
        chunk_size: int = 0,
        chunk_delay: float = 0.0,
        session_id: str = "",
    ) -> None:
        self._write = write
        self._is_alive = is_alive
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._session_id = session_id
        self._pending: deque[PendingInput] = deque()
        self._backlog: deque[PendingInput] = deque()
        self._task: asyncio.Task | None = None
        self._open = False
        self.dropped = 0

    @property
    def pending(self) -> list[PendingInput]:
        return list(self._pending)

    @property
    def typing(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, data: str | bytes, *, paced: bool = False) -> None:
        item = PendingInput(data, paced and self._chunk_size > 0)
        if not self._open:
            self._pending.append(item)
            if len(self._pending) > PENDING_HIGH_WATERMARK:
                overflow = len(self._pending) - PENDING_KEEP
                for _ in range(overflow):
                    self._pending.popleft()
                self.dropped += overflow
                logger.warning(
                    "Pending input overflow; dropped oldest",
                    session_id=self._session_id,
                    dropped=overflow,
                )
            return
        self._dispatch(item)

    def open(self) -> None:
        """Readiness reached: flush the pending queue in order."""
        if self._open:
            return
        self._open = True
        queued = list(self._pending)
        self._pending.clear()
        if queued:
            logger.info("Flushing queued input", session_id=self._session_id, count=len(queued))
        for item in queued:
            self._dispatch(item)

    def _dispatch(self, item: PendingInput) -> None:
        if not item.paced and not self._backlog and not self.typing:
            if self._is_alive():
                self._write(item.data)
            return
        self._backlog.append(item)
        if not self.typing:
            self._task = asyncio.get_running_loop().create_task(self._drain())
            self._task.add_done_callback(self._on_drain_done)

    async def _drain(self) -> None:
        while self._backlog:
            item = self._backlog.popleft()
            if not item.paced:
                if not self._is_alive():
                    return
                self._write(item.data)
                continue
            text = item.data.decode("utf-8", "replace") if isinstance(item.data, bytes) else item.data
            for chunk in split_chunks(text, self._chunk_size):
                if not self._is_alive():
                    logger.debug("Typing stopped; session gone", session_id=self._session_id)
                    return
                self._write(chunk)
                await asyncio.sleep(self._chunk_delay)

    def _on_drain_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        dropped = 0
        if task is self._task:
            dropped = len(self._backlog)
            self._backlog.clear()
        logger.error(
            "Typing sequence failed",
            session_id=self._session_id,
            dropped=dropped,
            exc_info=task.exception(),
        )

    def cancel(self) -> None:
        """Drop all queued input and stop any running typing sequence."""
        self._pending.clear()
        self._backlog.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
