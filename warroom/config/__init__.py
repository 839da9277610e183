"""Configuration management.

Config is loaded explicitly by the composition root and passed to the
components that need it:

    from warroom.config import load_warroom_config
    config = load_warroom_config()
"""

from warroom.config.loader import load_config, load_warroom_config, resolve_config_path
from warroom.config.schema import (
    CompletionConfig,
    GitConfig,
    MergeConfig,
    OrchestratorConfig,
    OutputConfig,
    PathsConfig,
    RetryConfig,
    RiskThresholds,
    TerminalConfig,
    WarroomConfig,
)

__all__ = [
    "CompletionConfig",
    "GitConfig",
    "MergeConfig",
    "OrchestratorConfig",
    "OutputConfig",
    "PathsConfig",
    "RetryConfig",
    "RiskThresholds",
    "TerminalConfig",
    "WarroomConfig",
    "load_config",
    "load_warroom_config",
    "resolve_config_path",
]
