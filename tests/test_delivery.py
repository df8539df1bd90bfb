"""Tests for input queueing and paced delivery."""

import asyncio

import pytest
import structlog.testing

from termhub.delivery import PENDING_KEEP, InputDelivery, split_chunks


class Sink:
    def __init__(self) -> None:
        self.writes: list[str] = []
        self.alive = True

    def write(self, data) -> None:
        self.writes.append(data)

    def is_alive(self) -> bool:
        return self.alive


def test_split_chunks() -> None:
    assert split_chunks("abcdefg", 3) == ["abc", "def", "g"]
    assert split_chunks("abc", 0) == ["abc"]
    assert split_chunks("", 4) == [""]


class TestQueueing:
    """Buffering until readiness."""

    def test_flush_in_submission_order(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive)
        delivery.submit("a")
        delivery.submit(b"b")
        assert sink.writes == []
        delivery.open()
        assert sink.writes == ["a", b"b"]
        delivery.submit("c")
        assert sink.writes[-1] == "c"

    def test_overflow_keeps_newest(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive)
        for i in range(201):
            delivery.submit(str(i))
        assert len(delivery.pending) == PENDING_KEEP == 120
        assert delivery.pending[0].data == "81"
        assert delivery.pending[-1].data == "200"
        assert delivery.dropped == 81

    def test_dead_process_gets_nothing(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive)
        delivery.submit("a")
        sink.alive = False
        delivery.open()
        assert sink.writes == []


class TestPacing:
    """Chunked typing for programs that drop large writes."""

    @pytest.mark.anyio
    async def test_paced_input_is_chunked(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive, chunk_size=3, chunk_delay=0.001)
        delivery.open()
        delivery.submit("abcdefg\r", paced=True)
        assert delivery.typing
        assert sink.writes == []
        await asyncio.sleep(0.05)
        assert sink.writes == ["abc", "def", "g\r"]
        assert not delivery.typing

    @pytest.mark.anyio
    async def test_unpaced_input_waits_behind_typing(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive, chunk_size=2, chunk_delay=0.001)
        delivery.submit("abcd", paced=True)
        delivery.submit("x")
        delivery.open()
        delivery.submit("y")
        await asyncio.sleep(0.05)
        assert sink.writes == ["ab", "cd", "x", "y"]

    @pytest.mark.anyio
    async def test_pacing_disabled_without_chunk_size(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive)
        delivery.open()
        delivery.submit("whole line\r", paced=True)
        assert sink.writes == ["whole line\r"]

    @pytest.mark.anyio
    async def test_typing_stops_when_process_dies(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive, chunk_size=1, chunk_delay=0.01)
        delivery.open()
        delivery.submit("abcdef", paced=True)
        await asyncio.sleep(0.015)
        sink.alive = False
        await asyncio.sleep(0.05)
        assert 0 < len(sink.writes) < 6
        assert not delivery.typing

    @pytest.mark.anyio
    async def test_cancel(self) -> None:
        sink = Sink()
        delivery = InputDelivery(sink.write, sink.is_alive, chunk_size=1, chunk_delay=0.01)
        delivery.submit("queued")
        delivery.open()
        delivery.submit("abcdef", paced=True)
        delivery.cancel()
        await asyncio.sleep(0.03)
        assert sink.writes == ["queued"]
        assert delivery.pending == []

    @pytest.mark.anyio
    async def test_write_failure_is_logged_and_recovers(self) -> None:
        sink = Sink()
        fail = [True]

        def write(data) -> None:
            if fail[0]:
                raise OSError("pty closed")
            sink.write(data)

        delivery = InputDelivery(
            write, sink.is_alive, chunk_size=2, chunk_delay=0.001, session_id="alice-typer-1"
        )
        delivery.open()
        with structlog.testing.capture_logs() as logs:
            delivery.submit("hello", paced=True)
            delivery.submit("behind")
            await asyncio.sleep(0.02)
        assert not delivery.typing
        [failure] = [entry for entry in logs if entry["event"] == "Typing sequence failed"]
        assert failure["session_id"] == "alice-typer-1"
        assert failure["dropped"] == 1
        assert failure["log_level"] == "error"

        fail[0] = False
        delivery.submit("ok", paced=True)
        await asyncio.sleep(0.02)
        assert sink.writes == ["ok"]
