"""Program table: which CLIs can be launched and how to recognize their prompts."""

from __future__ import annotations

import json
from collections.abc import Iterable

import structlog
from pydantic import ValidationError

from termhub.errors import ConfigurationError
from termhub.models import ProgramDescriptor, ProgramSpec, ProgramVariant
from termhub.settings import settings

logger = structlog.get_logger(__name__)

DEFAULT_VARIANT = "default"

BUILTIN_PROGRAMS: list[ProgramSpec] = [
    ProgramSpec(
        id="gemini",
        name="Gemini CLI",
        description="Google Gemini command-line agent",
        command="gemini",
        variants=[
            ProgramVariant(id="default", name="Default"),
            ProgramVariant(id="gemini-2.5-pro", name="Gemini 2.5 Pro", flag="-m gemini-2.5-pro"),
            ProgramVariant(id="gemini-2.5-flash", name="Gemini 2.5 Flash", flag="-m gemini-2.5-flash"),
        ],
        ready_signatures=["type your message", "@path/to/file", "tips for getting started"],
        prompt_glyphs=[">"],
        ready_timeout_seconds=8.0,
        # Gemini drops characters from large single writes.
        paste_chunk_size=48,
        paste_chunk_delay_seconds=0.015,
    ),
    ProgramSpec(
        id="codex",
        name="Codex CLI",
        description="OpenAI Codex command-line agent",
        command="codex",
        variants=[
            ProgramVariant(id="default", name="Default"),
            ProgramVariant(id="gpt-5-codex", name="GPT-5 Codex", flag="--model gpt-5-codex"),
            ProgramVariant(id="o4-mini", name="o4-mini", flag="--model o4-mini"),
        ],
        ready_signatures=["send a message", "ctrl+c to quit", "/status", "to get started, describe a task"],
        prompt_glyphs=["›", "▌"],
        ready_timeout_seconds=5.0,
    ),
    ProgramSpec(
        id="claude",
        name="Claude Code",
        description="Anthropic Claude command-line agent",
        command="claude",
        variants=[
            ProgramVariant(id="default", name="Default"),
            ProgramVariant(id="sonnet", name="Sonnet", flag="--model sonnet"),
            ProgramVariant(id="opus", name="Opus", flag="--model opus"),
        ],
        ready_signatures=["? for shortcuts", "bypass permissions", "try \""],
        prompt_glyphs=[">"],
        ready_timeout_seconds=6.0,
    ),
]


class ProgramCatalog:
    """Lookup table of launchable programs keyed by id."""

    def __init__(self, programs: Iterable[ProgramSpec]) -> None:
        self._programs: dict[str, ProgramSpec] = {}
        for program in programs:
            self._programs[program.id] = program

    @classmethod
    def from_file(cls, path: str) -> ProgramCatalog:
        """Load a catalog from a JSON list of program objects.

        Raises:
            ConfigurationError: If the file cannot be read or is malformed.
        """
        try:
            with open(path, encoding="utf-8") as handle:
                raw = json.load(handle)
            if isinstance(raw, dict):
                raw = raw.get("programs", [])
            programs = [ProgramSpec.model_validate(item) for item in raw]
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            raise ConfigurationError(f"Invalid programs file {path}: {exc}") from exc
        logger.info("Loaded program table", path=path, count=len(programs))
        return cls(programs)

    @classmethod
    def default(cls) -> ProgramCatalog:
        """Catalog from TERMHUB_PROGRAMS_FILE, or the built-in table."""
        path = settings.programs_file()
        if path:
            return cls.from_file(path)
        return cls(BUILTIN_PROGRAMS)

    def get(self, program_id: str) -> ProgramSpec:
        """Return the program or raise ``ConfigurationError``."""
        program = self._programs.get(program_id)
        if program is None:
            raise ConfigurationError(f"Unknown program: {program_id}")
        return program

    def resolve_variant(self, program: ProgramSpec, variant_id: str | None) -> str:
        """Validate a variant id for a program, mapping empty to ``default``."""
        variant_id = variant_id or DEFAULT_VARIANT
        if variant_id == DEFAULT_VARIANT:
            return variant_id
        if any(v.id == variant_id for v in program.variants):
            return variant_id
        raise ConfigurationError(f"Unknown variant {variant_id!r} for program {program.id}")

    def descriptors(self) -> list[ProgramDescriptor]:
        return [
            ProgramDescriptor(
                id=p.id,
                name=p.name,
                description=p.description,
                variants=list(p.variants),
                file_ref_prefix=p.file_ref_prefix,
            )
            for p in self._programs.values()
        ]

    def __contains__(self, program_id: object) -> bool:
        return program_id in self._programs


def build_start_command(program: ProgramSpec, variant_id: str | None) -> str:
    """Build the shell command line that launches ``program``.

    The variant's flag is appended only when the variant is not the default
    one and declares a flag.
    """
    parts = [program.command]
    if program.args:
        parts.append(" ".join(program.args))
    if variant_id and variant_id != DEFAULT_VARIANT:
        variant = next((v for v in program.variants if v.id == variant_id), None)
        if variant and variant.flag:
            parts.append(variant.flag)
    return " ".join(parts)
