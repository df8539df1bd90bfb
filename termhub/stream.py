"""Async iteration over a session's output for viewers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog

from termhub.registry import SessionRegistry

logger = structlog.get_logger(__name__)

STREAM_QUEUE_SIZE = 1024

_CLOSED = None


def _put_latest(queue: asyncio.Queue, item: str | None) -> None:
    """Enqueue without blocking, dropping the oldest chunk when full."""
    while True:
        try:
            queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass


async def stream_output(
    registry: SessionRegistry,
    session_id: str,
    *,
    queue_size: int = STREAM_QUEUE_SIZE,
) -> AsyncIterator[str]:
    """Yield the replay scrollback, then live output until the session ends.

    A slow consumer loses the oldest queued chunks rather than holding up
    the process read loop.

    Raises:
        SessionNotFoundError: If the session is not live.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def _on_data(text: str) -> None:
        _put_latest(queue, text)

    def _on_close(reason: str) -> None:
        logger.debug("Stream closed", session_id=session_id, reason=reason)
        _put_latest(queue, _CLOSED)

    replay = registry.replay(session_id)
    registry.subscribe(session_id, _on_data, on_close=_on_close)
    try:
        if replay:
            yield replay
        while True:
            chunk = await queue.get()
            if chunk is _CLOSED:
                return
            yield chunk
    finally:
        registry.unsubscribe(session_id, _on_data)
