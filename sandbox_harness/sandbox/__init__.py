"""Local sandbox process supervision."""

from .config import SandboxConfig
from .errors import (
    AlreadyStartedError,
    ConnectivityError,
    PortConflictError,
    ProbeError,
    SandboxError,
    SandboxStateError,
    SpawnError,
    StartupTimeoutError,
    ToolMissingError,
    UnexpectedExitError,
    VersionMismatchError,
)
from .signals import SignalRegistrar, default_registrar
from .supervisor import SandboxSupervisor, start_sandbox
from .types import ExitStatus, Ready, SupervisorState, TimerSlot

__all__ = [
    "AlreadyStartedError",
    "ConnectivityError",
    "ExitStatus",
    "PortConflictError",
    "ProbeError",
    "Ready",
    "SandboxConfig",
    "SandboxError",
    "SandboxStateError",
    "SandboxSupervisor",
    "SignalRegistrar",
    "SpawnError",
    "StartupTimeoutError",
    "SupervisorState",
    "TimerSlot",
    "ToolMissingError",
    "UnexpectedExitError",
    "VersionMismatchError",
    "default_registrar",
    "start_sandbox",
]
