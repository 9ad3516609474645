"""
Errors raised by sandbox supervision.

Every failure of ``start()`` or ``stop()`` reaches the caller as one
``SandboxError`` subclass. ``phase`` names where the failure happened
(``process-spawn``, ``process-exit``, ``connectivity-check``, ...).
"""

from .types import ExitStatus


class SandboxError(Exception):
    """Base class for sandbox lifecycle failures."""

    default_phase = "sandbox"

    def __init__(self, message: str, phase: str | None = None):
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase

    def __str__(self) -> str:
        return f"Sandbox {self.phase} failed: {self.message}"


class ToolMissingError(SandboxError):
    """The sandbox binary is not installed. Not retried."""

    default_phase = "process-spawn"


class SpawnError(SandboxError):
    """The launcher could not start the process for any other reason."""

    default_phase = "process-spawn"


class UnexpectedExitError(SandboxError):
    """The owned process exited before it became ready."""

    default_phase = "process-exit"

    def __init__(self, exit_status: ExitStatus, phase: str | None = None):
        if exit_status.clean:
            message = "Sandbox process exited unexpectedly"
        else:
            message = (
                f"Sandbox process exited with code {exit_status.code} "
                f"and signal {exit_status.signal}"
            )
        super().__init__(message, phase)
        self.exit_status = exit_status


class PortConflictError(SandboxError):
    """Another instance holds the port but does not answer the readiness probe."""

    default_phase = "external-sandbox-check"


class StartupTimeoutError(SandboxError):
    """Neither the owned nor the external path became ready in time."""

    default_phase = "startup-timeout"


class ConnectivityError(SandboxError):
    """The readiness prober raised."""

    default_phase = "connectivity-check"


class AlreadyStartedError(SandboxError):
    """``start()`` called on a supervisor that is not idle."""

    default_phase = "start"


class SandboxStateError(SandboxError):
    """An operation was called in a state where it is not allowed."""

    default_phase = "state"


class ProbeError(Exception):
    """Raised by the readiness prober when the node is not (or no longer) reachable."""

    pass


class VersionMismatchError(SandboxError):
    """The installed sandbox CLI does not match the expected version."""

    default_phase = "version-check"
