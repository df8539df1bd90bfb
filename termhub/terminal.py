"""Pseudo-terminal backed child processes driven from the asyncio loop."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from termhub.errors import ProcessSpawnError

logger = structlog.get_logger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 40
READ_SIZE = 65536

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], None]


@dataclass
class SpawnRequest:
    """Everything needed to launch one pseudo-terminal process."""

    argv: list[str]
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS


class ProcessHandle(Protocol):
    """Interface the registry uses to drive a spawned process."""

    pid: int

    @property
    def alive(self) -> bool: ...

    def write(self, data: str | bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[[SpawnRequest, OutputCallback, ExitCallback], ProcessHandle]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the slave side.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class PtyProcess:
    """A child process attached to a pseudo-terminal.

    Output is read from the master side with an event-loop reader, decoded
    incrementally as UTF-8 and handed to ``on_data`` in arrival order. When
    the child closes its side, ``on_exit`` fires exactly once with the exit
    code. A process stopped through ``kill()`` does not report an exit.
    """

    def __init__(
        self,
        request: SpawnRequest,
        on_data: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        self.request = request
        self.pid = 0
        self._on_data = on_data
        self._on_exit = on_exit
        self._master_fd = -1
        self._proc: subprocess.Popen | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._write_backlog = bytearray()
        self._alive = False
        self._killed = False
        self._exit_reported = False

    def start(self) -> None:
        """Open the pty pair and launch the process.

        Raises:
            ProcessSpawnError: If the pty or the process cannot be created.
        """
        self._loop = asyncio.get_running_loop()
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            raise ProcessSpawnError(f"Could not allocate a pseudo-terminal: {exc}") from exc

        try:
            _set_winsize(slave_fd, self.request.cols, self.request.rows)
            self._proc = subprocess.Popen(
                self.request.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.request.cwd,
                env=self.request.env,
                close_fds=True,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            os.close(master_fd)
            raise ProcessSpawnError(
                f"Could not start {' '.join(self.request.argv)}: {exc}"
            ) from exc
        finally:
            try:
                os.close(slave_fd)
            except OSError:
                pass

        self._master_fd = master_fd
        self.pid = self._proc.pid
        self._alive = True
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        logger.info(
            "PTY process started",
            pid=self.pid,
            cmd=" ".join(self.request.argv),
            cwd=self.request.cwd,
        )

    @property
    def alive(self) -> bool:
        return self._alive

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side has been closed by every child.
            data = b""
        if not data:
            self._finish()
            return
        text = self._decoder.decode(data)
        if text:
            self._deliver(text)

    def _deliver(self, text: str) -> None:
        try:
            self._on_data(text)
        except Exception:
            logger.exception("Output handler failed", pid=self.pid)

    def _finish(self) -> None:
        if not self._alive:
            return
        self._alive = False
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._deliver(tail)
        self._close_fd()
        if self._killed or self._proc is None:
            return
        code = self._proc.poll()
        if code is not None:
            self._report_exit(code)
            return
        assert self._loop is not None
        waiter = self._loop.run_in_executor(None, self._proc.wait)
        waiter.add_done_callback(
            lambda fut: self._report_exit(None if fut.exception() else fut.result())
        )

    def _report_exit(self, code: int | None) -> None:
        if self._exit_reported:
            return
        self._exit_reported = True
        logger.info("PTY process exited", pid=self.pid, exit_code=code)
        try:
            self._on_exit(code)
        except Exception:
            logger.exception("Exit handler failed", pid=self.pid)

    def write(self, data: str | bytes) -> None:
        """Write to the terminal without blocking the loop.

        Bytes the kernel buffer cannot take yet are kept and flushed when
        the master fd becomes writable again.
        """
        if not self._alive:
            return
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if self._write_backlog:
            self._write_backlog.extend(payload)
            return
        written = self._write_some(payload)
        if written < len(payload):
            self._write_backlog.extend(payload[written:])
            assert self._loop is not None
            self._loop.add_writer(self._master_fd, self._drain_backlog)

    def _write_some(self, payload: bytes) -> int:
        try:
            return os.write(self._master_fd, payload)
        except BlockingIOError:
            return 0
        except OSError as exc:
            logger.warning("PTY write failed", pid=self.pid, error=str(exc))
            return len(payload)

    def _drain_backlog(self) -> None:
        if not self._alive:
            self._write_backlog.clear()
            return
        written = self._write_some(bytes(self._write_backlog))
        del self._write_backlog[:written]
        if not self._write_backlog and self._loop is not None:
            self._loop.remove_writer(self._master_fd)

    def resize(self, cols: int, rows: int) -> None:
        if not self._alive:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as exc:
            logger.warning("PTY resize failed", pid=self.pid, error=str(exc))

    def kill(self) -> None:
        """Kill the whole process group. Safe to call more than once."""
        if self._killed:
            return
        self._killed = True
        if self._proc is None:
            return
        try:
            os.killpg(self.pid, signal.SIGKILL)
            logger.info("Killed PTY process group", pid=self.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone", pid=self.pid)
        except OSError as exc:
            logger.warning("Error killing PTY process", pid=self.pid, error=str(exc))
        try:
            self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("PTY process did not exit after SIGKILL", pid=self.pid)
        self._alive = False
        self._close_fd()

    def _close_fd(self) -> None:
        if self._master_fd < 0:
            return
        if self._loop is not None:
            self._loop.remove_reader(self._master_fd)
            self._loop.remove_writer(self._master_fd)
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1
        self._write_backlog.clear()


def spawn_pty(
    request: SpawnRequest, on_data: OutputCallback, on_exit: ExitCallback
) -> PtyProcess:
    """Default spawner: start a ``PtyProcess`` on the running loop."""
    process = PtyProcess(request, on_data, on_exit)
    process.start()
    return process
