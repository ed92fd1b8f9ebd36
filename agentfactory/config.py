# agentfactory/config.py
"""
Configuration for the agent factory.

All configuration flows through this module. Values are loaded from environment
variables (optionally via a .env file) and validated with Pydantic.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above agentfactory/),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_DEFAULT_HOME = Path.home() / ".agentfactory"

# Environment variable carrying the spawn depth from parent to child.
DEPTH_ENV_VAR = "AGENT_FACTORY_DEPTH"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return _coerce_str_list(parsed)
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


def current_depth() -> int:
    """Return the spawn depth of this process (0 for a top-level coordinator)."""
    raw = os.environ.get(DEPTH_ENV_VAR, "0")
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning("config.invalid_depth", value=raw)
        return 0


class FactoryConfig(BaseSettings):
    """Configuration for launching and supervising child agents."""

    agent_command: StrList = Field(
        default_factory=lambda: ["pi"], alias="AGENT_FACTORY_COMMAND"
    )
    max_depth: int = Field(1, alias="AGENT_FACTORY_MAX_DEPTH")
    poll_interval: float = Field(0.25, alias="AGENT_FACTORY_POLL_INTERVAL")
    kill_grace_seconds: float = Field(3.0, alias="AGENT_FACTORY_KILL_GRACE")
    runs_dir: Path = Field(_DEFAULT_HOME / "runs", alias="AGENT_FACTORY_RUNS_DIR")
    agents_dir: Path = Field(_DEFAULT_HOME / "agents", alias="AGENT_FACTORY_AGENTS_DIR")
    persist_sessions: bool = Field(True, alias="AGENT_FACTORY_PERSIST_SESSIONS")
    default_model: str = Field("", alias="AGENT_FACTORY_MODEL")
    typecheck_command: StrList = Field(
        default_factory=lambda: [
            "mypy",
            "--no-error-summary",
            "--no-incremental",
            "--disable-error-code",
            "top-level-await",
            "--ignore-missing-imports",
        ],
        alias="AGENT_FACTORY_TYPECHECK",
    )
    preflight_enabled: bool = Field(True, alias="AGENT_FACTORY_PREFLIGHT")
    stderr_tail_chars: int = Field(4000, alias="AGENT_FACTORY_STDERR_TAIL")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "FactoryConfig":
        self.max_depth = max(0, min(10, int(self.max_depth)))
        self.poll_interval = max(0.01, float(self.poll_interval))
        self.kill_grace_seconds = max(0.0, float(self.kill_grace_seconds))
        self.stderr_tail_chars = max(0, int(self.stderr_tail_chars))
        self.runs_dir = Path(self.runs_dir).expanduser()
        self.agents_dir = Path(self.agents_dir).expanduser()
        if not self.agent_command:
            self.agent_command = ["pi"]
        return self
