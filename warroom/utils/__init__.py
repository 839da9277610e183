"""Utility functions for Warroom."""

import os
import re
from datetime import datetime, timezone
from typing import Optional

_ANSI_PATTERN = re.compile(
    r"\x1b"  # ESC
    r"(?:"  # Start non-capturing group
    r"\[[0-9;?]*[a-zA-Z]"  # CSI sequences (ESC[...m, ESC[...H, etc.)
    r"|"
    r"\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences (ESC]...BEL or ESC]...ST)
    r"|"
    r"[=>]"  # Simple sequences (ESC=, ESC>)
    r")"
)


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def strip_ansi_codes(text: str) -> str:
    """Strip ANSI escape codes from text.

    Args:
        text: Text with ANSI escape codes

    Returns:
        Text with ANSI codes removed
    """
    return _ANSI_PATTERN.sub("", text)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return utcnow().isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC.

    Returns None for empty or malformed input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
