"""Configuration loading.

Search order (first found wins):
1. Explicit path (``--config``)
2. ./.bugsquad/config.yaml (project-specific)
3. ~/.bugsquad/config.yaml (user-global)
4. Built-in defaults

API keys may live in the YAML, but normally come from the environment
(ANTHROPIC_API_KEY, OPENAI_API_KEY, OPENROUTER_API_KEY).
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from bugsquad.core.errors import ConfigError
from bugsquad.core.llm import API_KEY_ENV_VARS, ProviderConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".bugsquad"
CONFIG_FILENAME = "config.yaml"


class LimitsConfig(BaseModel):
    """Timeouts and thresholds."""

    max_runtime_seconds: float = Field(default=3600, gt=0)
    investigator_timeout_seconds: float = Field(default=300, gt=0)
    termination_grace_seconds: float = Field(default=5, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    tool_timeout_seconds: float = Field(default=60, gt=0)
    max_tool_output_chars: int = Field(default=8000, gt=0)
    solution_confidence_threshold: float = Field(default=96, ge=0, le=100)
    max_idle_turns: int = Field(default=3, ge=1)


class RetryConfig(BaseModel):
    """Bounded exponential backoff for provider calls and malformed replies."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)


class BugsquadConfig(BaseModel):
    data_dir: Path = Path("~/.bugsquad")
    keep_worktrees: bool = False  # Investigator worktrees are removed when a session ends
    coordinator: ProviderConfig = Field(default_factory=ProviderConfig)
    investigator: ProviderConfig = Field(default_factory=ProviderConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir.expanduser().absolute()

    def validate_credentials(self) -> None:
        """Fail fast if either loop would be unable to call its model."""
        for role, provider in (("coordinator", self.coordinator), ("investigator", self.investigator)):
            if not provider.resolved_api_key():
                raise ConfigError(
                    f"No API key for the {role} model (provider '{provider.provider}'). "
                    f"Set {API_KEY_ENV_VARS[provider.provider]} or {role}.api_key in {CONFIG_FILENAME}."
                )

    def child_environment(self) -> dict[str, str]:
        """Environment for investigator subprocesses: inherit, plus configured keys."""
        env = dict(os.environ)
        key = self.investigator.resolved_api_key()
        if key:
            env[API_KEY_ENV_VARS[self.investigator.provider]] = key
        return env

    def to_child_json(self) -> str:
        """Serialized config for investigator subprocesses, without secrets."""
        return self.model_dump_json(
            exclude={"coordinator": {"api_key"}, "investigator": {"api_key"}},
        )


def _candidate_paths(explicit: str | Path | None) -> list[Path]:
    if explicit:
        return [Path(explicit).expanduser()]
    return [
        Path.cwd() / CONFIG_DIRNAME / CONFIG_FILENAME,
        Path.home() / CONFIG_DIRNAME / CONFIG_FILENAME,
    ]


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(path: str | Path | None = None) -> BugsquadConfig:
    """Load configuration from YAML with environment overrides.

    Raises:
        ConfigError: Explicit path missing, unreadable file or invalid values
    """
    data: dict[str, Any] = {}
    for candidate in _candidate_paths(path):
        if candidate.exists():
            data = _read_yaml(candidate)
            logger.debug(f"Loaded config from {candidate}")
            break
    else:
        if path:
            raise ConfigError(f"Config file not found: {path}")

    data_dir = os.environ.get("BUGSQUAD_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    try:
        return BugsquadConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")


DEFAULT_CONFIG_YAML = """# bugsquad configuration
# API keys are read from ANTHROPIC_API_KEY / OPENAI_API_KEY / OPENROUTER_API_KEY
# unless set explicitly below.

# Where session logs, reports, observations, notes and worktrees live
data_dir: ~/.bugsquad

# Keep investigator worktrees after a session ends (branches are always kept)
keep_worktrees: false

# Model driving the decision loop
coordinator:
  provider: anthropic  # anthropic, openai, openrouter
  model: claude-sonnet-4-5
  max_tokens: 4096
  temperature: 0.2

# Model used by each hypothesis investigator
investigator:
  provider: anthropic
  model: claude-sonnet-4-5
  max_tokens: 4096
  temperature: 0.2

limits:
  max_runtime_seconds: 3600  # Whole session
  investigator_timeout_seconds: 300  # Per investigator
  termination_grace_seconds: 5  # SIGTERM -> SIGKILL window
  poll_interval_seconds: 1.0
  tool_timeout_seconds: 60
  max_tool_output_chars: 8000
  solution_confidence_threshold: 96
  max_idle_turns: 3

retry:
  max_attempts: 3
  initial_delay: 2.0
  backoff_multiplier: 2.0
  max_delay: 30.0
  jitter: 0.1
"""
