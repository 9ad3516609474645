"""Shared fixtures and test doubles for sandbox supervision tests."""

import asyncio
import signal
from collections.abc import Sequence
from typing import Any

import pytest

from sandbox_harness.sandbox.config import SandboxConfig
from sandbox_harness.sandbox.types import ExitStatus

pytest_plugins = ["pytester"]


class FakeProcess:
    """
    In-memory stand-in for a spawned sandbox process.

    Records every signal delivered while the process is alive. By default it
    exits as soon as it is signalled; ``exit_on_terminate=False`` models a
    process that ignores SIGTERM.
    """

    def __init__(self, pid: int = 4242, exit_on_terminate: bool = True):
        self.pid = pid
        self.exit_on_terminate = exit_on_terminate
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.signals: list[str] = []
        self._loop = asyncio.get_running_loop()
        self._exited: asyncio.Future = self._loop.create_future()

    def emit_stdout(self, text: str) -> None:
        if self.returncode is None:
            self.stdout.feed_data(text.encode())

    def emit_stderr(self, text: str) -> None:
        if self.returncode is None:
            self.stderr.feed_data(text.encode())

    def exit(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set_result(ExitStatus.from_returncode(returncode))

    async def wait(self) -> ExitStatus:
        return await asyncio.shield(self._exited)

    def terminate(self) -> None:
        if self.returncode is not None:
            return
        self.signals.append("SIGTERM")
        if self.exit_on_terminate:
            self._loop.call_soon(self.exit, -signal.SIGTERM)

    def kill(self) -> None:
        if self.returncode is not None:
            return
        self.signals.append("SIGKILL")
        self._loop.call_soon(self.exit, -signal.SIGKILL)


class FakeLauncher:
    """Launcher double: hands out one ``FakeProcess`` or raises ``error``."""

    def __init__(self, error: BaseException | None = None, exit_on_terminate: bool = True):
        self.error = error
        self.exit_on_terminate = exit_on_terminate
        self.process: FakeProcess | None = None
        self.commands: list[list[str]] = []
        self.launched = asyncio.Event()

    async def launch(self, command: Sequence[str]) -> FakeProcess:
        self.commands.append(list(command))
        if self.error is not None:
            raise self.error
        self.process = FakeProcess(exit_on_terminate=self.exit_on_terminate)
        self.launched.set()
        return self.process


class FakeProber:
    """
    Readiness prober double.

    ``delays`` is consumed one entry per ``wait_ready`` call (the last entry
    repeats). A float is seconds until ready; ``None`` never becomes ready.
    """

    def __init__(
        self,
        delays: Sequence[float | None] = (0.0,),
        error: BaseException | None = None,
        node_info: dict[str, Any] | None = None,
    ):
        self.delays = list(delays)
        self.error = error
        self.node_info = node_info if node_info is not None else {"nodeVersion": "0.87.2"}
        self.calls = 0

    async def wait_ready(self) -> None:
        index = min(self.calls, len(self.delays) - 1)
        self.calls += 1
        if self.error is not None:
            raise self.error
        delay = self.delays[index]
        if delay is None:
            await asyncio.Event().wait()
        await asyncio.sleep(delay)

    async def get_node_info(self) -> dict[str, Any]:
        return self.node_info


class FakeSupervisor:
    """Minimal object a ``SignalRegistrar`` can shut down."""

    def __init__(self, error: BaseException | None = None):
        self.loop: asyncio.AbstractEventLoop | None = None
        self.error = error
        self.shutdown_calls = 0

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.error is not None:
            raise self.error


@pytest.fixture
def config() -> SandboxConfig:
    """Config with timeouts short enough for unit tests."""
    return SandboxConfig(
        startup_timeout=0.5,
        force_kill_timeout=0.2,
        external_probe_timeout=0.3,
        verbose=True,
    )
