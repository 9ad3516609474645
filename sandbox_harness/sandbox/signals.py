"""
Process-wide SIGINT/SIGTERM handling for sandbox cleanup.

A supervisor registers itself with a ``SignalRegistrar`` when it is created
and unregisters on its final state reset. When the host receives a
termination signal, the registrar shuts down whichever supervisor is
registered, then exits the host with status 0. Killing the test run
externally therefore never orphans a sandbox process.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Callable
from typing import Any, Protocol

from ..log_config import configure_logging, get_logger

configure_logging()


class Shutdownable(Protocol):
    loop: asyncio.AbstractEventLoop | None

    async def shutdown(self) -> None: ...


def exit_process(status: int) -> None:
    """Flush stdio and exit immediately, whichever thread we are on."""
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(status)


class SignalRegistrar:
    """Routes host termination signals to the registered supervisor."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)
    CLEANUP_TIMEOUT = 30.0

    def __init__(self, exit_func: Callable[[int], None] = exit_process):
        self.exit_func = exit_func
        self._active: Shutdownable | None = None
        self._installed = False
        self._previous: dict[signal.Signals, Any] = {}
        self._tasks: set[asyncio.Task] = set()
        self.log = get_logger("signals")

    @property
    def active(self) -> Shutdownable | None:
        return self._active

    @property
    def installed(self) -> bool:
        return self._installed

    def register(self, supervisor: Shutdownable) -> None:
        self._active = supervisor

    def unregister(self, supervisor: Shutdownable) -> None:
        """Release ``supervisor``; a newer registration is left alone."""
        if self._active is supervisor:
            self._active = None

    def install(self) -> bool:
        """
        Install the signal handlers. Safe to call repeatedly; only the first
        successful call changes anything.

        Returns:
            True if the handlers are installed
        """
        if self._installed:
            return True

        try:
            for sig in self.SIGNALS:
                self._previous[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
        except ValueError as e:
            # signal.signal only works on the main thread
            self.log.warning("signal.install_skipped", exc=e)
            self._restore()
            return False

        self._installed = True
        self.log.debug("signal.installed", signals=[s.name for s in self.SIGNALS])
        return True

    def uninstall(self) -> None:
        if self._installed:
            self._restore()
            self._installed = False

    def _restore(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        self._previous.clear()

    def _on_signal(self, signum: int, _frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        supervisor = self._active
        self.log.info("signal.received", signal_name=signal_name, active=supervisor is not None)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.call_soon_threadsafe(self._spawn_shutdown, loop, supervisor)
        else:
            self._shutdown_blocking(supervisor)

    def _spawn_shutdown(
        self, loop: asyncio.AbstractEventLoop, supervisor: Shutdownable | None
    ) -> None:
        task = loop.create_task(self.handle_shutdown(supervisor))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _shutdown_blocking(self, supervisor: Shutdownable | None) -> None:
        """Signal arrived while no loop runs on this thread."""
        loop = supervisor.loop if supervisor is not None else None
        if loop is None or loop.is_closed():
            self.exit_func(0)
            return

        if loop.is_running():
            # Loop lives on another thread
            future = asyncio.run_coroutine_threadsafe(self.handle_shutdown(supervisor), loop)
            try:
                future.result(timeout=self.CLEANUP_TIMEOUT)
            except Exception as e:
                self.log.error("signal.cleanup_error", exc=e)
                self.exit_func(0)
        else:
            loop.run_until_complete(self.handle_shutdown(supervisor))

    async def handle_shutdown(self, supervisor: Shutdownable | None) -> None:
        """Shut down ``supervisor`` (errors are logged, not raised), then exit the host."""
        if supervisor is not None:
            try:
                await supervisor.shutdown()
                self.log.info("signal.sandbox_stopped")
            except Exception as e:
                self.log.error("signal.cleanup_error", exc=e)
            self.unregister(supervisor)

        self.exit_func(0)


_default_registrar: SignalRegistrar | None = None


def default_registrar() -> SignalRegistrar:
    """The process-wide registrar, created on first use."""
    global _default_registrar
    if _default_registrar is None:
        _default_registrar = SignalRegistrar()
    return _default_registrar
