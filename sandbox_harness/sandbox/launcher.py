"""
Process launcher: spawns the sandbox binary and wraps the child process.

The supervisor only talks to ``SandboxProcess``: two line streams, an exit
status, and the two termination signals. Tests substitute their own launcher
with the same shape.
"""

import asyncio
import os
from collections.abc import Sequence
from typing import Protocol

from ..log_config import configure_logging, get_logger
from .errors import SpawnError, ToolMissingError
from .types import ExitStatus

configure_logging()

log = get_logger("launcher")


class SandboxProcess(Protocol):
    """Handle on a spawned sandbox process."""

    pid: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> ExitStatus: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessLauncher(Protocol):
    async def launch(self, command: Sequence[str]) -> SandboxProcess: ...


class AsyncioProcess:
    """``SandboxProcess`` backed by ``asyncio.subprocess.Process``."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self.pid = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> ExitStatus:
        returncode = await self._process.wait()
        return ExitStatus.from_returncode(returncode)

    def terminate(self) -> None:
        """Send SIGTERM. No-op once the process has exited."""
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """Send SIGKILL. No-op once the process has exited."""
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass


class SubprocessLauncher:
    """Spawn the sandbox with piped stdout/stderr."""

    def __init__(self, env: dict[str, str] | None = None, cwd: str | None = None):
        self.env = env
        self.cwd = cwd

    async def launch(self, command: Sequence[str]) -> AsyncioProcess:
        """
        Start ``command``.

        Raises:
            ToolMissingError: the binary is not on PATH
            SpawnError: any other OS-level spawn failure
        """
        binary = command[0]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env if self.env is not None else os.environ.copy(),
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(
                f"{binary} CLI not found. Please install it (for aztec: run aztec-up)"
            ) from e
        except OSError as e:
            raise SpawnError(f"Failed to start sandbox: {e}") from e

        log.debug("process.spawned", command=list(command), pid=process.pid)
        return AsyncioProcess(process)
