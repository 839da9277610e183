"""Terminal bridge for Warroom - opens, queries and closes lane terminal windows.

Three backends:
    tmux          detached session per lane (any platform with tmux)
    iterm         iTerm2 window via AppleScript (macOS)
    terminal_app  Terminal.app window via AppleScript (macOS)

All functions are stateless. Failures are logged and reported as False/None,
never raised. Window queries answer "open", "closed" or "unknown"; only a
backend that positively reports the window gone yields "closed".
"""

import asyncio
import logging
import re
import shlex
import shutil
import sys
from pathlib import Path
from typing import Dict, Literal, Optional, Sequence

logger = logging.getLogger(__name__)

TerminalBackend = Literal["tmux", "iterm", "terminal_app"]
WindowState = Literal["open", "closed", "unknown"]

ITERM_APP_PATH = "/Applications/iTerm.app"
_TMUX_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
# has-session stderr when the session (or the whole server) is gone
_TMUX_GONE_MARKERS = ("can't find session", "no server running", "error connecting to")

_tmux_binary = "tmux"


def configure_tmux(binary: str) -> None:
    global _tmux_binary  # pylint: disable=global-statement
    _tmux_binary = binary


def resolve_backend(preference: str = "auto") -> TerminalBackend:
    """Pick a concrete backend.

    ``auto`` prefers iTerm2 when installed on macOS, then Terminal.app on
    macOS, then tmux elsewhere.
    """
    if preference in ("tmux", "iterm", "terminal_app"):
        return preference  # type: ignore[return-value]
    if sys.platform == "darwin":
        return "iterm" if Path(ITERM_APP_PATH).exists() else "terminal_app"
    if shutil.which(_tmux_binary) is None:
        logger.warning("tmux not found on PATH; terminal launches will fail")
    return "tmux"


def window_title(lane_id: str, run_slug: str) -> str:
    return f"Lane: {lane_id} ({run_slug})"


def tmux_session_name(lane_id: str, run_slug: str) -> str:
    """tmux rejects '.' and ':' in session names."""
    return _TMUX_NAME_UNSAFE.sub("_", f"warroom-{run_slug}-{lane_id}")


def build_shell_command(worktree_path: str, command: Sequence[str], env: Dict[str, str]) -> str:
    """``cd <worktree> && env K=V ... <command>`` with every piece shell-quoted."""
    env_part = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    cmd_part = " ".join(shlex.quote(arg) for arg in command)
    prefix = f"env {env_part} " if env_part else ""
    return f"cd {shlex.quote(worktree_path)} && {prefix}{cmd_part}"


async def _run(*cmd: str) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        return -1, "", str(e)
    return proc.returncode or 0, stdout.decode(errors="replace").strip(), stderr.decode(errors="replace").strip()


# --- tmux ------------------------------------------------------------------


async def create_tmux_session(name: str, working_dir: str, shell_command: str) -> bool:
    """Start a detached tmux session running ``shell_command``.

    The session ends when the command exits, which is how lane completion is
    observed for this backend.
    """
    returncode, _, stderr = await _run(
        _tmux_binary, "new-session", "-d", "-s", name, "-c", working_dir, shell_command
    )
    if returncode != 0:
        logger.error("Failed to create tmux session %s: %s", name, stderr)
        return False
    return True


async def query_tmux_session(session_name: str) -> WindowState:
    """``closed`` only when tmux itself reports the session or server gone."""
    # "=" makes tmux match the name exactly instead of by prefix.
    returncode, _, stderr = await _run(_tmux_binary, "has-session", "-t", f"={session_name}")
    if returncode == 0:
        return "open"
    if returncode > 0 and any(marker in stderr for marker in _TMUX_GONE_MARKERS):
        return "closed"
    logger.warning("tmux has-session for %s failed (exit %s): %s", session_name, returncode, stderr)
    return "unknown"


async def kill_session(session_name: str) -> bool:
    returncode, _, stderr = await _run(_tmux_binary, "kill-session", "-t", f"={session_name}")
    if returncode != 0:
        logger.warning("Failed to kill tmux session %s: %s", session_name, stderr)
        return False
    return True


# --- AppleScript -----------------------------------------------------------


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _application_name(backend: TerminalBackend) -> str:
    return "iTerm" if backend == "iterm" else "Terminal"


def build_open_script(backend: TerminalBackend, shell_command: str, title: str) -> str:
    if backend == "iterm":
        return f"""
tell application "iTerm"
  activate
  create window with default profile
  tell current session of current window
    write text {_applescript_string(shell_command)}
  end tell
  tell current window
    set name to {_applescript_string(title)}
  end tell
  return id of current window
end tell
""".strip()
    return f"""
tell application "Terminal"
  activate
  do script {_applescript_string(shell_command)}
  set custom title of front window to {_applescript_string(title)}
  return id of front window
end tell
""".strip()


async def open_applescript_window(backend: TerminalBackend, shell_command: str, title: str) -> Optional[str]:
    """Open a window running ``shell_command``. Returns the window id."""
    returncode, stdout, stderr = await _run("osascript", "-e", build_open_script(backend, shell_command, title))
    if returncode != 0 or not stdout.isdigit():
        logger.error("Failed to open %s window %r: %s", _application_name(backend), title, stderr or stdout)
        return None
    return stdout


async def close_applescript_window(backend: TerminalBackend, window_id: str) -> bool:
    script = f'tell application "{_application_name(backend)}"\n  close window id {int(window_id)}\nend tell'
    returncode, _, stderr = await _run("osascript", "-e", script)
    if returncode != 0:
        logger.warning("Failed to close window %s: %s", window_id, stderr)
        return False
    return True


async def query_applescript_window(backend: TerminalBackend, window_id: str) -> WindowState:
    """Ask the terminal app whether the window id is still among its windows."""
    script = (
        f'tell application "{_application_name(backend)}"\n'
        f"  set windowIds to id of every window\n"
        f"  return {int(window_id)} is in windowIds\n"
        f"end tell"
    )
    returncode, stdout, stderr = await _run("osascript", "-e", script)
    if returncode == 0 and stdout in ("true", "false"):
        return "open" if stdout == "true" else "closed"
    logger.warning("Window query for %s failed (exit %s): %s", window_id, returncode, stderr or stdout)
    return "unknown"


# --- Backend-neutral -------------------------------------------------------


async def open_lane_window(
    backend: TerminalBackend,
    lane_id: str,
    run_slug: str,
    worktree_path: str,
    command: Sequence[str],
    env: Dict[str, str],
) -> Optional[str]:
    """Open a terminal running the lane's agent command.

    Returns:
        Window identifier (tmux session name or AppleScript window id), or None.
    """
    if backend == "tmux":
        name = tmux_session_name(lane_id, run_slug)
        shell_command = build_shell_command(worktree_path, command, env)
        if await create_tmux_session(name, worktree_path, shell_command):
            logger.info("Opened tmux session %s for lane %s", name, lane_id)
            return name
        return None

    window_id = await open_applescript_window(
        backend, build_shell_command(worktree_path, command, env), window_title(lane_id, run_slug)
    )
    if window_id:
        logger.info("Opened %s window %s for lane %s", _application_name(backend), window_id, lane_id)
    return window_id


async def query_window(backend: TerminalBackend, window_id: str) -> WindowState:
    if backend == "tmux":
        return await query_tmux_session(window_id)
    return await query_applescript_window(backend, window_id)


async def close_window(backend: TerminalBackend, window_id: str) -> bool:
    if backend == "tmux":
        return await kill_session(window_id)
    return await close_applescript_window(backend, window_id)
