"""Handles for a running lane: a child process or a terminal window.

Both variants support ``stop``. Only process handles can be suspended and
continued; terminal handles reject it.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol, Union

from warroom.constants import PROCESS_EXIT_POLL_S
from warroom.core import terminal_bridge
from warroom.core.errors import UnsupportedOperationError
from warroom.core.terminal_bridge import TerminalBackend, WindowState

logger = logging.getLogger(__name__)


class ProcessLike(Protocol):
    """The subset of ``asyncio.subprocess.Process`` a ProcessHandle uses."""

    pid: int
    returncode: Optional[int]

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


@dataclass
class ProcessHandle:
    process: ProcessLike
    kind: Literal["process"] = field(default="process", init=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self, poll_interval_s: float = PROCESS_EXIT_POLL_S) -> int:
        """Return the exit code as soon as the process itself has exited.

        ``Process.wait()`` may not return until every output pipe is closed,
        and a background child of the agent can hold those open. ``returncode``
        is set once the child is reaped, so it is polled alongside.
        """
        waiter = asyncio.ensure_future(self.process.wait())
        try:
            while self.process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=poll_interval_s)
        finally:
            if not waiter.done():
                waiter.cancel()
        if self.process.returncode is not None:
            return self.process.returncode
        return waiter.result()

    async def stop(self, grace_s: float) -> None:
        """SIGTERM, then SIGKILL if the process outlives ``grace_s``."""
        if self.process.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(self.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored SIGTERM for %.1fs, killing", self.pid, grace_s)
            try:
                self.process.kill()
            except ProcessLookupError:
                return
            await self.wait()

    def pause(self) -> None:
        self.process.send_signal(signal.SIGSTOP)

    def resume(self) -> None:
        self.process.send_signal(signal.SIGCONT)


@dataclass
class TerminalHandle:
    backend: TerminalBackend
    window_id: str
    kind: Literal["terminal"] = field(default="terminal", init=False)

    async def window_state(self) -> WindowState:
        return await terminal_bridge.query_window(self.backend, self.window_id)

    async def stop(self, grace_s: float) -> None:  # pylint: disable=unused-argument
        if not await terminal_bridge.close_window(self.backend, self.window_id):
            logger.warning("Could not close %s window %s", self.backend, self.window_id)

    def pause(self) -> None:
        raise UnsupportedOperationError("Pause is not supported for terminal-mode lanes")

    def resume(self) -> None:
        raise UnsupportedOperationError("Resume is not supported for terminal-mode lanes")


LaneHandle = Union[ProcessHandle, TerminalHandle]
