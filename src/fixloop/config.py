# config.py
# Settings and logging setup. Values come from the environment (and a .env
# file, if present); nothing else reads os.environ.

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from rich.logging import RichHandler

from fixloop.backends import OPENROUTER_BASE_URL

ENV_PREFIX = "FIXLOOP_"


class Settings(BaseModel):
    base_url: str = OPENROUTER_BASE_URL
    api_key: str | None = None
    model: str = "anthropic/claude-3.5-haiku"
    agent_max_iterations: int = Field(5, ge=1)
    max_turn_steps: int = Field(50, ge=1)
    tool_timeout: float = Field(60.0, gt=0)
    request_timeout: float = Field(120.0, gt=0)
    check_command: str | None = None
    check_timeout: float = Field(120.0, gt=0)
    build_command: str | None = None
    regenerate_command: str | None = None
    verify_timeout: float = Field(600.0, gt=0)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Build settings from FIXLOOP_* variables. The API key falls back to
        OPENROUTER_API_KEY, then OPENAI_API_KEY. Explicit overrides that are
        not None win over the environment.
        """
        load_dotenv()
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        if "api_key" not in values:
            fallback = os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")
            if fallback:
                values["api_key"] = fallback
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
