"""Tests for the async output stream helper."""

import asyncio

import pytest

from termhub.errors import SessionNotFoundError
from termhub.stream import stream_output


async def _collect(iterator, into: list[str]) -> None:
    async for chunk in iterator:
        into.append(chunk)


@pytest.mark.anyio
async def test_replay_then_live_until_close(registry, spawner) -> None:
    session_id = registry.create_session("alice", "echoer", mode="terminal")
    spawner.last.emit("$ earlier\r\n")

    chunks: list[str] = []
    task = asyncio.create_task(_collect(stream_output(registry, session_id), chunks))
    await asyncio.sleep(0)
    spawner.last.emit("live one")
    spawner.last.emit("live two")
    registry.destroy_session(session_id)
    await asyncio.wait_for(task, timeout=1)

    assert chunks == ["$ earlier\n", "live one", "live two"]


@pytest.mark.anyio
async def test_slow_consumer_keeps_newest(registry, spawner) -> None:
    session_id = registry.create_session("alice", "echoer")
    stream = stream_output(registry, session_id, queue_size=2)
    first = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0)
    for chunk in ("a", "b", "c", "d"):
        spawner.last.emit(chunk)
    assert await first == "c"
    assert await stream.__anext__() == "d"
    await stream.aclose()
    assert registry.get_session(session_id).subscribers == []


@pytest.mark.anyio
async def test_unknown_session(registry) -> None:
    with pytest.raises(SessionNotFoundError):
        await stream_output(registry, "ghost").__anext__()
