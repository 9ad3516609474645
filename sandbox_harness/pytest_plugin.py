"""
pytest plugin: start the local sandbox before the test session, stop it after.

Enable with ``-p sandbox_harness.pytest_plugin --sandbox`` (or list the module
in ``pytest_plugins``). Setup order:

1. Check the sandbox CLI version (``--sandbox-check-version``)
2. Start the sandbox and wait for readiness; abort the run on failure

Tests get the ready supervisor through the ``sandbox_supervisor`` fixture.
"""

import asyncio
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

import pytest

from .log_config import configure_logging, get_logger
from .sandbox.config import SandboxConfig
from .sandbox.errors import SandboxError
from .sandbox.launcher import ProcessLauncher
from .sandbox.prober import ReadinessProber
from .sandbox.signals import SignalRegistrar, default_registrar
from .sandbox.supervisor import SandboxSupervisor
from .sandbox.version_check import check_cli_version

configure_logging()

log = get_logger("pytest_plugin")

T = TypeVar("T")


class SandboxSession:
    """
    Owns a supervisor and the event loop it runs on.

    Tests run synchronously, so the loop lives on a daemon thread and keeps
    draining the sandbox's output pipes between tests.
    """

    def __init__(
        self,
        config: SandboxConfig,
        *,
        launcher: ProcessLauncher | None = None,
        prober: ReadinessProber | None = None,
        registrar: SignalRegistrar | None = None,
    ):
        self.config = config
        self.loop = asyncio.new_event_loop()
        self.supervisor = SandboxSupervisor(
            config, launcher=launcher, prober=prober, registrar=registrar
        )
        self._thread = threading.Thread(
            target=self._run_loop, name="sandbox-event-loop", daemon=True
        )
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the session loop and block for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def start(self) -> SandboxSupervisor:
        return self.run(self.supervisor.start())

    def close(self) -> None:
        """Stop the sandbox, then the loop. Safe to call more than once."""
        if self.loop.is_closed():
            return
        try:
            self.run(self.supervisor.stop())
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join()
            self.loop.close()


_session_key = pytest.StashKey[SandboxSession]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("sandbox", "local sandbox")
    group.addoption(
        "--sandbox",
        action="store_true",
        default=False,
        help="Start the local sandbox before the test session",
    )
    group.addoption(
        "--sandbox-check-version",
        action="store_true",
        default=False,
        help="Check the sandbox CLI version before starting it",
    )


def pytest_sessionstart(session: pytest.Session) -> None:
    config = session.config
    if not config.getoption("sandbox"):
        return

    log.info("harness.setup")
    sandbox_config = SandboxConfig.from_env()
    sandbox_session = SandboxSession(sandbox_config, registrar=default_registrar())

    try:
        if config.getoption("sandbox_check_version"):
            sandbox_session.run(check_cli_version(sandbox_config.binary))
        sandbox_session.start()
    except SandboxError as e:
        log.error("harness.setup_failed", error=str(e))
        sandbox_session.close()
        pytest.exit(f"Sandbox setup failed: {e}", returncode=1)

    config.stash[_session_key] = sandbox_session
    log.info("harness.ready", owned=sandbox_session.supervisor.owns_process)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    sandbox_session = session.config.stash.get(_session_key, None)
    if sandbox_session is None:
        return

    log.info("harness.teardown")
    try:
        sandbox_session.close()
        log.info("harness.teardown_complete")
    except Exception as e:
        # Cleanup problems must not change the test outcome
        log.error("harness.teardown_error", exc=e)


@pytest.fixture(scope="session")
def sandbox_supervisor(request: pytest.FixtureRequest) -> SandboxSupervisor:
    """The ready supervisor started for this session."""
    sandbox_session = request.config.stash.get(_session_key, None)
    if sandbox_session is None:
        pytest.skip("run with --sandbox to start the local sandbox")
    return sandbox_session.supervisor
