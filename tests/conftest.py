"""Shared pytest fixtures for termhub tests."""

import asyncio
import os
from typing import Generator

import pytest

from termhub.errors import ProcessSpawnError
from termhub.history import HistoryStore
from termhub.models import ProgramSpec, ProgramVariant
from termhub.programs import ProgramCatalog
from termhub.registry import SessionRegistry
from termhub.terminal import SpawnRequest


TEST_PROGRAMS = [
    ProgramSpec(
        id="echoer",
        name="Echoer",
        description="Answers after printing a prompt",
        command="echoer",
        args=["--plain"],
        variants=[
            ProgramVariant(id="default", name="Default"),
            ProgramVariant(id="fast", name="Fast", flag="--fast"),
        ],
        ready_signatures=["ready>"],
        ready_timeout_seconds=5.0,
    ),
    ProgramSpec(
        id="typer",
        name="Typer",
        command="typer",
        ready_signatures=["ready>"],
        ready_timeout_seconds=5.0,
        paste_chunk_size=4,
        paste_chunk_delay_seconds=0.0,
    ),
]


class FakeProcess:
    """In-memory stand-in for a pseudo-terminal process."""

    def __init__(self, request: SpawnRequest, on_data, on_exit) -> None:
        self.request = request
        self.pid = 4242
        self.writes: list[str] = []
        self.size = (request.cols, request.rows)
        self.killed = False
        self._on_data = on_data
        self._on_exit = on_exit
        self._alive = True

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def written(self) -> str:
        return "".join(self.writes)

    def write(self, data) -> None:
        if not self._alive:
            return
        self.writes.append(data.decode("utf-8") if isinstance(data, bytes) else data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def kill(self) -> None:
        self.killed = True
        self._alive = False

    def emit(self, text: str) -> None:
        self._on_data(text)

    def exit(self, code: int | None = 0) -> None:
        self._alive = False
        self._on_exit(code)


class FakeSpawner:
    """Spawner recording every process it creates."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail = False

    def __call__(self, request, on_data, on_exit) -> FakeProcess:
        if self.fail:
            raise ProcessSpawnError("no pty available")
        process = FakeProcess(request, on_data, on_exit)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


async def settle(seconds: float = 0.01) -> None:
    """Let scheduled loop callbacks (start delay, typing tasks) run."""
    await asyncio.sleep(seconds)


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    """Isolate every test from host TERMHUB_ configuration."""
    for key in list(os.environ.keys()):
        if key.startswith("TERMHUB_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TERMHUB_DATA_DIR", str(tmp_path / "data"))
    return monkeypatch


@pytest.fixture
def history_dir(tmp_path) -> str:
    return str(tmp_path / "data" / "history")


@pytest.fixture
def history(history_dir) -> HistoryStore:
    return HistoryStore(history_dir)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def catalog() -> ProgramCatalog:
    return ProgramCatalog(TEST_PROGRAMS)


@pytest.fixture
def make_registry(catalog, history, spawner, tmp_path):
    """Factory for registries wired to the fake spawner."""

    def _make(**overrides) -> SessionRegistry:
        options = dict(
            catalog=catalog,
            history=history,
            spawner=spawner,
            env_resolver=lambda: {"HOME": str(tmp_path), "TERM": "xterm-256color"},
            idle_timeout_seconds=0,
            reap_interval_seconds=60,
            start_delay_seconds=0,
            home=str(tmp_path),
            shell="/bin/sh",
        )
        options.update(overrides)
        return SessionRegistry(**options)

    return _make


@pytest.fixture
def registry(make_registry) -> Generator[SessionRegistry, None, None]:
    reg = make_registry()
    yield reg
    reg.reaper.stop()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force the AnyIO pytest plugin to run tests under asyncio.

    The registry schedules loop callbacks and tasks with asyncio directly,
    which is incompatible with the trio backend.
    """
    return "asyncio"
