"""
Sandbox supervisor - starts, health-checks and tears down the local sandbox.

Lifecycle (one pass per instance):

    idle -> starting -> ready -> stopping -> stopped
                  \\-> stopped (timeout, spawn failure, early exit)

``start()`` races three channels and settles on the first outcome:
1. the launched process: spawn errors, an early exit, or a port conflict
   that switches to attaching to an already-running external instance
2. the readiness probe against our own process
3. the startup timer

``stop()`` terminates the process only when this supervisor owns it:
SIGTERM first, SIGKILL once the force-kill timer fires.
"""

import asyncio
import time
from collections.abc import Callable
from urllib.parse import urlsplit

from ..log_config import configure_logging, get_logger
from .config import DEFAULT_NODE_PORT, SandboxConfig
from .errors import (
    AlreadyStartedError,
    ConnectivityError,
    PortConflictError,
    SandboxError,
    SandboxStateError,
    SpawnError,
    StartupTimeoutError,
    UnexpectedExitError,
)
from .launcher import ProcessLauncher, SandboxProcess, SubprocessLauncher
from .prober import NodeProber, ReadinessProber
from .signals import SignalRegistrar, default_registrar
from .types import OutputChannel, Ready, SupervisorState, TimerSlot

configure_logging()

StartOutcome = Ready | SandboxError


class SandboxSupervisor:
    """
    Supervisor for one sandbox session.

    The process handle and timers belong to this instance only. A registrar,
    when given, is told about this instance on construction and released on
    the final state reset, so host termination signals can stop it.
    """

    STDERR_DRAIN_TIMEOUT = 1.0

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        launcher: ProcessLauncher | None = None,
        prober: ReadinessProber | None = None,
        registrar: SignalRegistrar | None = None,
    ):
        self.config = config or SandboxConfig()
        self.launcher = launcher or SubprocessLauncher()
        self.prober = prober or NodeProber(
            self.config.node_url,
            method=self.config.rpc_method,
            interval=self.config.probe_interval,
            max_wait=self.config.probe_max_wait,
        )
        self.registrar = registrar

        self.state = SupervisorState.IDLE
        self.owns_process = False
        self.process: SandboxProcess | None = None
        self.loop: asyncio.AbstractEventLoop | None = None

        self._timers: dict[TimerSlot, asyncio.TimerHandle] = {}
        self._output_tasks: list[asyncio.Task] = []
        self._port_conflict = asyncio.Event()
        self._stopped = asyncio.Event()
        self._start_task: asyncio.Task | None = None

        self.log = get_logger("supervisor", node_url=self.config.node_url)

        if registrar is not None:
            registrar.register(self)
            registrar.install()

    @property
    def verbose(self) -> bool:
        return self.config.verbose

    @property
    def is_ready(self) -> bool:
        return self.state is SupervisorState.READY

    @property
    def pending_timers(self) -> frozenset[TimerSlot]:
        """Timer slots currently armed."""
        return frozenset(self._timers)

    # -- timers -------------------------------------------------------------

    def _create_timer(
        self, slot: TimerSlot, delay: float, callback: Callable[[], None]
    ) -> asyncio.TimerHandle:
        """Arm ``slot``. A slot holds one handle; re-arming replaces the old one."""
        self._clear_timer(slot)
        loop = self.loop or asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire_timer, slot, callback)
        self._timers[slot] = handle
        return handle

    def _fire_timer(self, slot: TimerSlot, callback: Callable[[], None]) -> None:
        self._timers.pop(slot, None)
        callback()

    def _clear_timer(self, slot: TimerSlot) -> None:
        handle = self._timers.pop(slot, None)
        if handle is not None:
            handle.cancel()

    def _clear_timers(self) -> None:
        for slot in list(self._timers):
            self._clear_timer(slot)

    # -- state ----------------------------------------------------------------

    def _reset_state(self) -> None:
        """The only place timers, the process handle and the registration are released."""
        self._clear_timers()

        for task in self._output_tasks:
            if not task.done():
                task.cancel()
        self._output_tasks = []

        self.process = None
        self.owns_process = False
        self.state = SupervisorState.STOPPED
        self._stopped.set()

        if self.registrar is not None:
            self.registrar.unregister(self)

    async def _terminate_spawn(self) -> None:
        """Stop our own process if it is still running, SIGKILL after the grace period."""
        process = self.process
        if process is None or process.returncode is not None:
            return
        self.log.info("sandbox.terminate_spawn", pid=process.pid)
        process.terminate()
        await self._reap(process)

    async def _fail(self, error: SandboxError) -> SandboxError:
        """Reset everything and hand back ``error`` for the caller to raise."""
        await self._terminate_spawn()
        self._reset_state()
        if self.verbose:
            self.log.error("sandbox.error", phase=error.phase, error=error.message)
        return error

    # -- start ----------------------------------------------------------------

    async def start(self) -> "SandboxSupervisor":
        """
        Start the sandbox and wait until it answers the readiness probe.

        Returns:
            self, in the ready state

        Raises:
            AlreadyStartedError: this instance has already been started
            SandboxError: any startup failure; state is fully reset
        """
        if self.state is not SupervisorState.IDLE or self.process is not None:
            raise AlreadyStartedError("Cannot start sandbox - already running or starting")

        self.state = SupervisorState.STARTING
        self.loop = asyncio.get_running_loop()
        self._start_task = asyncio.current_task()
        self.log.info("sandbox.start", command=list(self.config.command))

        try:
            outcome = await self._race_startup()
        except asyncio.CancelledError:
            await self._terminate_spawn()
            self._reset_state()
            self.log.info("sandbox.start_cancelled")
            raise
        finally:
            self._start_task = None

        if isinstance(outcome, SandboxError):
            raise await self._fail(outcome)

        self.owns_process = outcome.owned
        self.state = SupervisorState.READY
        if outcome.owned:
            self.log.info("sandbox.ready", owned=True)
        else:
            self.log.info("sandbox.attached_external")
        return self

    async def _race_startup(self) -> StartOutcome:
        loop = self.loop
        timed_out: asyncio.Future = loop.create_future()

        def on_timeout() -> None:
            if not timed_out.done():
                timed_out.set_result(
                    StartupTimeoutError(
                        f"Sandbox startup timed out after {self.config.startup_timeout:g} seconds"
                    )
                )

        self._create_timer(TimerSlot.STARTUP_TIMEOUT, self.config.startup_timeout, on_timeout)
        readiness = asyncio.create_task(self._probe_own_readiness(), name="sandbox-readiness")
        launch = asyncio.create_task(self._launch_and_watch(readiness), name="sandbox-launch")

        channels: set[asyncio.Future] = {readiness, launch, timed_out}
        try:
            while channels:
                done, channels = await asyncio.wait(
                    channels, return_when=asyncio.FIRST_COMPLETED
                )
                for channel in (readiness, launch, timed_out):
                    if channel in done and not channel.cancelled():
                        return self._outcome_of(channel)
            return StartupTimeoutError("Sandbox startup was abandoned")
        finally:
            self._clear_timer(TimerSlot.STARTUP_TIMEOUT)
            if not timed_out.done():
                timed_out.cancel()
            for task in (readiness, launch):
                if not task.done():
                    task.cancel()
            await asyncio.gather(readiness, launch, return_exceptions=True)

    @staticmethod
    def _outcome_of(channel: asyncio.Future) -> StartOutcome:
        exc = channel.exception()
        if exc is not None:
            error = SandboxError(f"Unexpected startup failure: {exc}", phase="start")
            error.__cause__ = exc
            return error
        return channel.result()

    async def _probe_own_readiness(self) -> StartOutcome:
        self.log.info("sandbox.wait_ready")
        try:
            await self._check_connectivity()
        except Exception as e:
            error = ConnectivityError(f"Failed to connect to sandbox: {e}")
            error.__cause__ = e
            return error
        return Ready(owned=True)

    async def _check_connectivity(self) -> None:
        """Wait for the node, then log what it reports about itself."""
        started = time.monotonic()
        await self.prober.wait_ready()
        node_info = await self.prober.get_node_info()
        self.log.info(
            "sandbox.node_reachable",
            duration_ms=int((time.monotonic() - started) * 1000),
            node_version=node_info.get("nodeVersion"),
        )

    async def _launch_and_watch(self, readiness: asyncio.Task) -> StartOutcome:
        """Spawn the process; settle on spawn failure, early exit, or a port conflict."""
        try:
            process = await self.launcher.launch(self.config.command)
        except SandboxError as e:
            return e
        except Exception as e:
            error = SpawnError(f"Failed to spawn sandbox process: {e}")
            error.__cause__ = e
            return error

        self.process = process
        self._output_tasks = [
            asyncio.create_task(self._forward_output(process.stdout, OutputChannel.STDOUT)),
            asyncio.create_task(self._forward_output(process.stderr, OutputChannel.STDERR)),
        ]

        exit_waiter = asyncio.ensure_future(process.wait())
        conflict_waiter = asyncio.ensure_future(self._port_conflict.wait())
        try:
            await asyncio.wait(
                {exit_waiter, conflict_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if not self._port_conflict.is_set():
                # The conflict message may still be buffered when the exit lands
                await asyncio.wait({self._output_tasks[1]}, timeout=self.STDERR_DRAIN_TIMEOUT)
            if self._port_conflict.is_set():
                return await self._attach_external(readiness, process)
            return UnexpectedExitError(exit_waiter.result())
        finally:
            for waiter in (exit_waiter, conflict_waiter):
                if not waiter.done():
                    waiter.cancel()

    async def _attach_external(
        self, readiness: asyncio.Task, process: SandboxProcess
    ) -> StartOutcome:
        """Drop our failed spawn and check whether the instance holding the port answers."""
        self._clear_timer(TimerSlot.STARTUP_TIMEOUT)
        readiness.cancel()
        self.log.info("sandbox.port_in_use", action="checking existing sandbox")

        process.terminate()
        self.process = None

        port = urlsplit(self.config.node_url).port or DEFAULT_NODE_PORT
        try:
            await asyncio.wait_for(
                self._check_connectivity(), timeout=self.config.external_probe_timeout
            )
        except Exception as e:
            error = PortConflictError(f"Port {port} is in use but sandbox is not responsive")
            error.__cause__ = e
            return error
        finally:
            await self._reap(process)

        return Ready(owned=False)

    async def _reap(self, process: SandboxProcess) -> None:
        """Collect a terminated spawn, escalating to SIGKILL after the grace period."""
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.force_kill_timeout)
        except TimeoutError:
            process.kill()
            await process.wait()

    async def _forward_output(
        self, stream: asyncio.StreamReader | None, channel: OutputChannel
    ) -> None:
        """Drain a process stream; watch stderr for the port conflict marker."""
        if stream is None:
            return

        try:
            async for raw in stream:
                line = raw.decode(errors="replace").rstrip()
                if not line:
                    continue
                if self.verbose:
                    self.log.info(f"sandbox.{channel.value}", line=line)
                if (
                    channel is OutputChannel.STDERR
                    and self.config.port_conflict_marker in line
                    and not self._port_conflict.is_set()
                ):
                    self._port_conflict.set()
        except ValueError as e:
            self.log.warning("sandbox.output_error", channel=channel.value, exc=e)

    # -- stop -----------------------------------------------------------------

    async def stop(self) -> None:
        """
        Stop the sandbox. Idempotent.

        An external instance is only detached from, never signalled. An owned
        process gets SIGTERM, then SIGKILL after ``force_kill_timeout``.
        Requires any ``start()`` call to have settled.
        """
        if self.state in (SupervisorState.IDLE, SupervisorState.STOPPED):
            return

        if self.state is SupervisorState.STARTING:
            raise SandboxStateError("Cannot stop sandbox while start() is still in progress")

        if self.state is SupervisorState.STOPPING:
            await self._stopped.wait()
            return

        if not self.owns_process:
            self.log.info("sandbox.detach_external")
            self._reset_state()
            return

        process = self.process
        if process is None or process.returncode is not None:
            self._reset_state()
            return

        self.state = SupervisorState.STOPPING
        self.log.info("sandbox.stop", pid=process.pid)
        self._create_timer(
            TimerSlot.FORCE_KILL_TIMEOUT, self.config.force_kill_timeout, self._force_kill
        )
        process.terminate()

        try:
            exit_status = await process.wait()
            self.log.info("sandbox.stopped", exit_code=exit_status.code, signal=exit_status.signal)
        finally:
            self._reset_state()

    def _force_kill(self) -> None:
        if self.process is not None:
            self.log.warning("sandbox.force_kill", pid=self.process.pid)
            self.process.kill()

    async def shutdown(self) -> None:
        """Stop from any state; an in-flight ``start()`` is cancelled first."""
        start_task = self._start_task
        if self.state is SupervisorState.STARTING and start_task is not None:
            if start_task is asyncio.current_task():
                raise SandboxStateError("shutdown() cannot be awaited from within start()")
            start_task.cancel()
            await asyncio.wait({start_task})
            return
        await self.stop()


async def start_sandbox(
    config: SandboxConfig | None = None,
    *,
    launcher: ProcessLauncher | None = None,
    prober: ReadinessProber | None = None,
    registrar: SignalRegistrar | None = None,
) -> SandboxSupervisor:
    """Create a supervisor registered with the process-wide registrar and start it."""
    supervisor = SandboxSupervisor(
        config,
        launcher=launcher,
        prober=prober,
        registrar=registrar if registrar is not None else default_registrar(),
    )
    await supervisor.start()
    return supervisor
