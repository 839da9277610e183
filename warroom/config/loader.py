import logging
import os
from pathlib import Path
from typing import Optional, Type, TypeVar

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from warroom.config.schema import WarroomConfig
from warroom.constants import DEFAULT_CONFIG_PATH, ENV_CONFIG_PATH, ENV_ENV_PATH
from warroom.utils import expand_env_vars

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if hasattr(model, "model_extra") and model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a YAML file.

    A missing or unreadable file yields the model defaults. Validation
    errors propagate: a config that parses but is wrong should stop startup.

    Args:
        path: Path to the warroom.yml file.
        model_class: The Pydantic model class to use for validation.

    Returns:
        The validated configuration model.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    expanded = expand_env_vars(raw)
    model = model_class.model_validate(expanded)
    _warn_unknown_keys(model, "root", path)
    return model


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Explicit path, then $WARROOM_CONFIG, then the default location."""
    if path is not None:
        return path
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path).expanduser()
    return Path(DEFAULT_CONFIG_PATH).expanduser()


def load_dotenv_file() -> None:
    """Load a .env file from $WARROOM_ENV_PATH or the current directory."""
    env_path = os.getenv(ENV_ENV_PATH)
    if env_path:
        load_dotenv(Path(env_path).expanduser())
    else:
        load_dotenv()


def load_warroom_config(path: Optional[Path] = None) -> WarroomConfig:
    """Load the Warroom configuration."""
    load_dotenv_file()
    return load_config(resolve_config_path(path), WarroomConfig)
