from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import FleetConfig


ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""

    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)


def parse_fleet(content: str) -> FleetConfig:
    try:
        raw = yaml.safe_load(interpolate_env_vars(content)) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Fleet file is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("Fleet file root must be a mapping")
    try:
        return FleetConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid fleet declaration:\n{e}") from e


def load_fleet(path: str | Path) -> FleetConfig:
    """Load and validate the fleet declaration once, at process start."""
    p = Path(path).expanduser()
    if not p.is_file():
        raise ConfigError(f"Fleet file not found: {p}")
    return parse_fleet(p.read_text(encoding="utf-8"))
