"""Engine settings loaded from .nodeflow/config.yaml."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

CONFIG_DIR = ".nodeflow"
CONFIG_FILENAME = "config.yaml"
CONFIG_ENV_VAR = "NODEFLOW_CONFIG"

DEFAULT_CONFIG_YAML = """# nodeflow configuration for this project

# Hard cap on loop iterations when a loop node sets no maxIterations
max_iterations: 1000

# Outbound HTTP (api_call nodes)
http_timeout: 30
default_headers:
  Content-Type: application/json

# SQLite file holding entity records and run history
database_path: .nodeflow/state.db

# Entities available to database_query nodes
entities: []

# Record every run in the history table
record_history: true

log_level: INFO
"""


class ConfigError(Exception):
    """Config file exists but cannot be used."""


class EngineSettings(BaseModel):
    """Tunable engine behaviour. Every field has a working default."""

    max_iterations: int = Field(default=1000, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)
    default_headers: dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )
    database_path: Path = Path(CONFIG_DIR) / "state.db"
    entities: list[str] = Field(default_factory=list)
    record_history: bool = True
    log_level: str = "INFO"


def config_path(repo_path: Path | None = None) -> Path:
    """Resolve the config file location. NODEFLOW_CONFIG wins over the repo default."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return (repo_path or Path.cwd()) / CONFIG_DIR / CONFIG_FILENAME


def load_settings(path: Path | None = None) -> EngineSettings:
    """Load settings, falling back to defaults when no file exists.

    A relative database_path is resolved against the directory that holds
    the .nodeflow folder, not the process working directory.

    Raises:
        ConfigError: The file is not valid YAML or fails validation
    """
    path = path or config_path()
    if not path.exists():
        return EngineSettings()

    try:
        with open(path) as f:
            data: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

    try:
        settings = EngineSettings(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e

    if not settings.database_path.is_absolute():
        root = path.parent.parent if path.parent.name == CONFIG_DIR else path.parent
        settings.database_path = root / settings.database_path
    return settings
