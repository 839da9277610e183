"""Lane launcher - starts a lane's coding agent and streams its output.

Process mode spawns the agent as a child process with piped output feeding the
output buffers. Terminal mode opens a terminal window through the terminal
bridge; no output is captured in that mode.
"""

import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from warroom.config.schema import OrchestratorConfig, TerminalConfig
from warroom.constants import LANE_ID_ENV, RUN_SLUG_ENV
from warroom.core import terminal_bridge
from warroom.core.errors import LaunchError
from warroom.core.lane_handles import ProcessHandle, TerminalHandle
from warroom.core.output_buffer import OutputBufferManager, OutputLine, Stream
from warroom.core.run_documents import Lane

logger = logging.getLogger(__name__)

LineCallback = Callable[[str, str, OutputLine], Awaitable[None]]


class LaneLauncher:
    """Builds agent commands and spawns them for lanes."""

    def __init__(
        self,
        config: OrchestratorConfig,
        terminal: TerminalConfig,
        output_buffers: OutputBufferManager,
    ) -> None:
        self._config = config
        self._terminal_backend = terminal_bridge.resolve_backend(terminal.backend)
        self._output_buffers = output_buffers

    def build_command(self, lane: Lane) -> List[str]:
        command = shlex.split(self._config.agent_command)
        if lane.autonomy.dangerously_skip_permissions and self._config.skip_permissions_flag:
            command.append(self._config.skip_permissions_flag)
        return command

    @staticmethod
    def build_env(lane: Lane, run_slug: str) -> Dict[str, str]:
        return {LANE_ID_ENV: lane.lane_id, RUN_SLUG_ENV: run_slug}

    @staticmethod
    def _require_worktree(lane: Lane) -> None:
        if not Path(lane.worktree_path).is_dir():
            raise LaunchError(f"Worktree path does not exist: {lane.worktree_path}")

    async def launch_process(self, run_slug: str, lane: Lane) -> ProcessHandle:
        """Spawn the agent in the lane's worktree.

        Raises:
            LaunchError: Worktree missing or the binary could not be executed.
        """
        self._require_worktree(lane)
        command = self.build_command(lane)
        env = {**os.environ, **self.build_env(lane, run_slug)}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=lane.worktree_path,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchError(f"Failed to spawn {command[0]}: {e}") from e

        logger.info("Spawned lane %s (pid %s): %s", lane.lane_id, process.pid, " ".join(command))
        return ProcessHandle(process=process)

    async def launch_terminal(self, run_slug: str, lane: Lane) -> TerminalHandle:
        """Open a terminal window running the agent.

        Raises:
            LaunchError: Worktree missing or the window could not be opened.
        """
        self._require_worktree(lane)
        window_id = await terminal_bridge.open_lane_window(
            self._terminal_backend,
            lane.lane_id,
            run_slug,
            lane.worktree_path,
            self.build_command(lane),
            self.build_env(lane, run_slug),
        )
        if not window_id:
            raise LaunchError(f"Failed to open {self._terminal_backend} window for lane {lane.lane_id}")
        return TerminalHandle(backend=self._terminal_backend, window_id=window_id)

    async def pump_output(
        self,
        run_slug: str,
        lane_id: str,
        handle: ProcessHandle,
        on_line: Optional[LineCallback] = None,
    ) -> None:
        """Read stdout/stderr until both close, feeding the output buffers."""

        async def read(stream: Optional[asyncio.StreamReader], name: Stream) -> None:
            if stream is None:
                return
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    # Line exceeded the stream limit; readline already discarded it.
                    logger.warning("Dropped over-long %s line from lane %s", name, lane_id)
                    continue
                if not raw:
                    return
                text = raw.decode(errors="replace").rstrip("\r\n")
                line = self._output_buffers.add_line(run_slug, lane_id, text, name)
                if on_line is not None:
                    await on_line(run_slug, lane_id, line)

        process = handle.process
        await asyncio.gather(
            read(getattr(process, "stdout", None), "stdout"),
            read(getattr(process, "stderr", None), "stderr"),
        )
