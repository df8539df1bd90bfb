"""Tests for structlog configuration."""

import json
import logging

import pytest
import structlog

from termhub.log_config import configure_logging


@pytest.fixture
def restore_logging():
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()
    logging.getLogger().setLevel(logging.WARNING)


def test_json_format_renders_stdlib_records(clean_env, restore_logging, capsys) -> None:
    clean_env.setenv("TERMHUB_LOG_FORMAT", "json")
    clean_env.setenv("TERMHUB_LOG_LEVEL", "debug")
    configure_logging()
    assert logging.getLogger().level == logging.DEBUG

    logging.getLogger("asyncio").error("Task exception was never retrieved")
    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "Task exception was never retrieved"
    assert payload["logger"] == "asyncio"
    assert payload["level"] == "error"


def test_unknown_level_falls_back_to_info(clean_env, restore_logging) -> None:
    clean_env.setenv("TERMHUB_LOG_LEVEL", "chatty")
    configure_logging()
    assert logging.getLogger().level == logging.INFO
