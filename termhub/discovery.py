"""Ask a program which models it offers by driving its ``/model`` command."""

from __future__ import annotations

import asyncio
import re

import structlog

from termhub.environment import EnvironmentResolver, default_resolver
from termhub.errors import ProcessSpawnError
from termhub.models import ProgramSpec, ProgramVariant
from termhub.sanitize import clean_text
from termhub.settings import settings
from termhub.terminal import SpawnRequest, Spawner, spawn_pty

logger = structlog.get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 2.5
LAUNCH_DELAY_SECONDS = 0.3
COMMAND_GAP_SECONDS = 0.8
MODEL_FAMILIES = ("codex", "gpt", "gemini", "o3", "o4")

_TOKEN_RE = re.compile(r"[a-z][a-z0-9._-]{2,}", re.IGNORECASE)


def parse_models_from_output(text: str) -> list[str]:
    """Model identifiers mentioned in ``text``, in first-seen order."""
    found: dict[str, None] = {}
    for line in clean_text(text or "").split("\n"):
        for token in _TOKEN_RE.findall(line.strip()):
            lowered = token.lower()
            if len(token) < 4 or "model" in lowered:
                continue
            if any(family in lowered for family in MODEL_FAMILIES):
                found.setdefault(token, None)
    return list(found)


def model_flag(program: ProgramSpec, model_id: str) -> str:
    if program.id == "codex":
        return f"--model {model_id}"
    return f"-m {model_id}"


async def probe_models(
    program: ProgramSpec,
    *,
    spawner: Spawner = spawn_pty,
    env_resolver: EnvironmentResolver | None = None,
    shell: str | None = None,
    home: str | None = None,
    timeout: float = PROBE_TIMEOUT_SECONDS,
) -> list[str]:
    """Start ``program`` in a throwaway terminal and scrape its model list.

    Output collected until the program exits or ``timeout`` elapses is
    parsed; the process is killed either way.
    """
    home = home or settings.home_dir()
    resolver = env_resolver or default_resolver(home)
    loop = asyncio.get_running_loop()
    chunks: list[str] = []
    exited = loop.create_future()

    def _on_data(text: str) -> None:
        chunks.append(text)

    def _on_exit(code: int | None) -> None:
        if not exited.done():
            exited.set_result(code)

    request = SpawnRequest(
        argv=[shell or settings.shell()],
        cwd=program.working_directory or home,
        env=resolver(),
    )
    try:
        process = spawner(request, _on_data, _on_exit)
    except ProcessSpawnError:
        logger.warning("Model probe could not start", program=program.id)
        return []

    async def _script() -> None:
        await asyncio.sleep(LAUNCH_DELAY_SECONDS)
        process.write(f"{program.command}\r")
        await asyncio.sleep(COMMAND_GAP_SECONDS)
        process.write("/model\r")
        await asyncio.sleep(COMMAND_GAP_SECONDS)
        process.write("/exit\r")

    script = loop.create_task(_script())
    try:
        await asyncio.wait_for(asyncio.shield(exited), timeout)
    except asyncio.TimeoutError:
        logger.debug("Model probe timed out", program=program.id)
    finally:
        script.cancel()
        process.kill()

    models = parse_models_from_output("".join(chunks))
    logger.info("Model probe finished", program=program.id, models=len(models))
    return models


async def discover_variants(program: ProgramSpec, **kwargs) -> list[ProgramVariant]:
    """Variants reported by the program itself, else the configured ones."""
    models = await probe_models(program, **kwargs)
    if not models:
        return list(program.variants)
    return [ProgramVariant(id=m, name=m, flag=model_flag(program, m)) for m in models]
