"""Tests for pseudo-terminal processes, run against a real /bin/sh."""

import asyncio
import os
import sys

import pytest

from termhub.errors import ProcessSpawnError
from termhub.terminal import SpawnRequest, spawn_pty

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"),
    reason="needs a POSIX pseudo-terminal and /bin/sh",
)


def _request(tmp_path, *argv: str) -> SpawnRequest:
    return SpawnRequest(
        argv=list(argv) or ["/bin/sh"],
        cwd=str(tmp_path),
        env={"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "TERM": "xterm-256color", "PS1": "$ "},
    )


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestPtyProcess:
    """Output, exit reporting, resize and kill."""

    @pytest.mark.anyio
    async def test_output_and_exit_code(self, tmp_path) -> None:
        output: list[str] = []
        exits: list = []
        process = spawn_pty(_request(tmp_path), output.append, exits.append)
        assert process.alive
        assert process.pid > 0

        process.write("echo hello-$((40+2))\r")
        await _wait_for(lambda: "hello-42" in "".join(output))
        process.write("exit 7\r")
        await _wait_for(lambda: exits)
        assert exits == [7]
        assert not process.alive

    @pytest.mark.anyio
    async def test_resize_sets_window_size(self, tmp_path) -> None:
        output: list[str] = []
        process = spawn_pty(_request(tmp_path), output.append, lambda code: None)
        try:
            process.write("stty size\r")
            await _wait_for(lambda: "40 120" in "".join(output))
            process.resize(100, 33)
            process.write("stty size\r")
            await _wait_for(lambda: "33 100" in "".join(output))
        finally:
            process.kill()

    @pytest.mark.anyio
    async def test_kill_is_idempotent_and_silent(self, tmp_path) -> None:
        exits: list = []
        process = spawn_pty(_request(tmp_path, "/bin/sh", "-c", "sleep 30"), lambda text: None, exits.append)
        process.kill()
        process.kill()
        await asyncio.sleep(0.1)
        assert not process.alive
        assert exits == []
        process.write("ignored")

    @pytest.mark.anyio
    async def test_spawn_failure(self, tmp_path) -> None:
        with pytest.raises(ProcessSpawnError):
            spawn_pty(_request(tmp_path, "/nonexistent/program"), lambda text: None, lambda code: None)
