"""Sandbox supervisor configuration."""

import os
import shlex
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_COMMAND = ("aztec", "start", "--sandbox")
DEFAULT_NODE_PORT = 8080
DEFAULT_NODE_URL = f"http://localhost:{DEFAULT_NODE_PORT}"
PORT_CONFLICT_MARKER = "port is already"

# env var -> field name
_ENV_FIELDS = {
    "SANDBOX_VERBOSE": "verbose",
    "SANDBOX_STARTUP_TIMEOUT": "startup_timeout",
    "SANDBOX_FORCE_KILL_TIMEOUT": "force_kill_timeout",
    "SANDBOX_EXTERNAL_PROBE_TIMEOUT": "external_probe_timeout",
    "SANDBOX_PROBE_INTERVAL": "probe_interval",
    "SANDBOX_PROBE_MAX_WAIT": "probe_max_wait",
    "SANDBOX_RPC_METHOD": "rpc_method",
}


class SandboxConfig(BaseModel):
    """Settings for one sandbox session."""

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] = DEFAULT_COMMAND
    node_url: str = DEFAULT_NODE_URL
    verbose: bool = False
    startup_timeout: float = Field(default=180.0, gt=0)
    force_kill_timeout: float = Field(default=5.0, gt=0)
    external_probe_timeout: float = Field(default=30.0, gt=0)
    probe_interval: float = Field(default=1.0, gt=0)
    probe_max_wait: float | None = Field(default=None, gt=0)
    rpc_method: str = "node_getNodeInfo"
    port_conflict_marker: str = PORT_CONFLICT_MARKER

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("command must not be empty")
        return value

    @property
    def binary(self) -> str:
        """The executable the launcher runs."""
        return self.command[0]

    def node_url_for(self, instance: int) -> str:
        """URL of the ``instance``-th node; each instance listens one port above the previous."""
        parts = urlsplit(self.node_url)
        port = (parts.port or DEFAULT_NODE_PORT) + instance
        return urlunsplit((parts.scheme, f"{parts.hostname}:{port}", parts.path, "", ""))

    @classmethod
    def from_env(cls, **overrides: Any) -> "SandboxConfig":
        """Build a config from ``SANDBOX_*`` environment variables; ``overrides`` win."""
        values: dict[str, Any] = {}

        command = os.environ.get("SANDBOX_COMMAND")
        if command:
            values["command"] = tuple(shlex.split(command))

        node_url = os.environ.get("SANDBOX_NODE_URL")
        base_url = os.environ.get("BASE_PXE_URL")
        if node_url:
            values["node_url"] = node_url
        elif base_url:
            values["node_url"] = f"{base_url.rstrip('/')}:{DEFAULT_NODE_PORT}"

        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.environ.get(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
