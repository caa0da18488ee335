import logging

import pytest
from pydantic import ValidationError
from rich.logging import RichHandler

from fixloop import config
from fixloop.backends import OPENROUTER_BASE_URL
from fixloop.config import Settings, configure_logging

ENV_NAMES = [f"FIXLOOP_{name.upper()}" for name in Settings.model_fields] + [
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests.
    monkeypatch.setattr(config, "load_dotenv", lambda *args, **kwargs: False)


def test_defaults():
    settings = Settings.from_env()
    assert settings.base_url == OPENROUTER_BASE_URL
    assert settings.api_key is None
    assert settings.agent_max_iterations == 5
    assert settings.check_command is None


def test_environment_values_are_parsed(monkeypatch):
    monkeypatch.setenv("FIXLOOP_MODEL", "openai/gpt-4o-mini")
    monkeypatch.setenv("FIXLOOP_AGENT_MAX_ITERATIONS", "7")
    monkeypatch.setenv("FIXLOOP_TOOL_TIMEOUT", "2.5")
    monkeypatch.setenv("FIXLOOP_CHECK_COMMAND", "make check")

    settings = Settings.from_env()

    assert settings.model == "openai/gpt-4o-mini"
    assert settings.agent_max_iterations == 7
    assert settings.tool_timeout == 2.5
    assert settings.check_command == "make check"


def test_api_key_fallbacks(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
    assert Settings.from_env().api_key == "sk-openai"

    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-router")
    assert Settings.from_env().api_key == "sk-router"

    monkeypatch.setenv("FIXLOOP_API_KEY", "sk-fixloop")
    assert Settings.from_env().api_key == "sk-fixloop"


def test_overrides_win_unless_none(monkeypatch):
    monkeypatch.setenv("FIXLOOP_MODEL", "from-env")

    assert Settings.from_env(model="from-flag").model == "from-flag"
    assert Settings.from_env(model=None).model == "from-env"


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("FIXLOOP_AGENT_MAX_ITERATIONS", "0")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_configure_logging_installs_rich_handler():
    configure_logging("debug")
    root = logging.getLogger()
    try:
        assert root.level == logging.DEBUG
        assert any(isinstance(handler, RichHandler) for handler in root.handlers)
    finally:
        configure_logging("WARNING")
