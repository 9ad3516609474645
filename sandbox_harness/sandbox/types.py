"""Type definitions for sandbox supervision."""

import signal
from dataclasses import dataclass
from enum import Enum


class SupervisorState(str, Enum):
    """Lifecycle state of a sandbox supervisor."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


class TimerSlot(str, Enum):
    """Named timers a supervisor may hold. At most one handle per slot."""

    STARTUP_TIMEOUT = "startup_timeout"
    FORCE_KILL_TIMEOUT = "force_kill_timeout"


class OutputChannel(str, Enum):
    """Process output stream."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class Ready:
    """Successful start outcome. ``owned`` is False when attached to an external instance."""

    owned: bool


@dataclass(frozen=True)
class ExitStatus:
    """How a process ended: an exit code, or the signal that terminated it."""

    code: int | None
    signal: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        """Build from an asyncio returncode (negative values are signal numbers)."""
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(code=None, signal=name)
        return cls(code=returncode)

    @property
    def clean(self) -> bool:
        return self.code == 0 and self.signal is None
