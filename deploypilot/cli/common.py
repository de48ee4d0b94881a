"""Helpers shared by CLI commands."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

from deploypilot.core.exceptions import ValidationError
from deploypilot.utils.config import AppConfig, ConfigManager
from deploypilot.utils.logger import get_logger


def config_manager(ctx: click.Context, config_path: Optional[str]) -> ConfigManager:
    """Build the ConfigManager for a subcommand's ``--config`` option."""
    obj = ctx.find_root().obj or {}
    return ConfigManager(
        config_path=Path(config_path) if config_path else None,
        env_file=obj.get("env_file"),
    )


def setup_logging(ctx: click.Context, app_config: AppConfig) -> None:
    obj = ctx.find_root().obj or {}
    get_logger("deploypilot", obj.get("log_level") or app_config.logging.level)


def load_request_file(path: str) -> Dict[str, Any]:
    """
    Read a request payload from a JSON or YAML file.

    Raises:
        ValidationError: If the file cannot be parsed
    """
    file_path = Path(path)
    try:
        with open(file_path, "r") as f:
            if file_path.suffix.lower() == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Failed to parse request file {file_path}: {e}")
