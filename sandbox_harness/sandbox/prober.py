"""Readiness prober: JSON-RPC liveness checks against the sandbox node."""

import asyncio
import itertools
import time
from typing import Any, Protocol

import httpx

from ..log_config import configure_logging, get_logger
from .errors import ProbeError

configure_logging()


class ReadinessProber(Protocol):
    async def wait_ready(self) -> None: ...

    async def get_node_info(self) -> dict[str, Any]: ...


class NodeProber:
    """
    Poll the node's JSON-RPC endpoint until it answers.

    Connection errors, request timeouts, non-200 responses and JSON-RPC errors
    are all retried every ``interval`` seconds: a booting node may answer
    before it is ready. ``max_wait`` bounds the total wait; ``None`` retries
    until the caller gives up. Once the budget runs out the last error is
    reported.
    """

    REQUEST_TIMEOUT = 5.0
    RETRYABLE = (
        httpx.ConnectError,
        httpx.TimeoutException,
        httpx.RemoteProtocolError,
        ProbeError,
    )
    INFO_METHOD = "node_getNodeInfo"

    def __init__(
        self,
        url: str,
        method: str = "node_getNodeInfo",
        interval: float = 1.0,
        max_wait: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.method = method
        self.interval = interval
        self.max_wait = max_wait
        self._transport = transport
        self._ids = itertools.count(1)
        self.log = get_logger("prober", node_url=url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.REQUEST_TIMEOUT)

    async def _call(self, client: httpx.AsyncClient, method: str) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": []}
        resp = await client.post(self.url, json=payload)
        if resp.status_code != 200:
            raise ProbeError(f"{method} returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ProbeError(f"{method} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise ProbeError(f"{method} returned a malformed response")
        if body.get("error"):
            raise ProbeError(f"{method} failed: {body['error']}")
        return body.get("result")

    async def wait_ready(self) -> None:
        """Return once the node answers the liveness call."""
        start_time = time.monotonic()
        attempts = 0
        last_error: Exception | None = None

        async with self._client() as client:
            while True:
                attempts += 1
                try:
                    await self._call(client, self.method)
                    self.log.debug("probe.ok", attempts=attempts)
                    return
                except self.RETRYABLE as e:
                    last_error = e
                    self.log.debug("probe.retry", attempts=attempts, exc=e)

                elapsed = time.monotonic() - start_time
                if self.max_wait is not None and elapsed >= self.max_wait:
                    raise ProbeError(
                        f"Node at {self.url} not reachable after {attempts} attempts: {last_error}"
                    ) from last_error
                await asyncio.sleep(self.interval)

    async def get_node_info(self) -> dict[str, Any]:
        """Fetch node metadata (version, chain id, ...)."""
        async with self._client() as client:
            try:
                result = await self._call(client, self.INFO_METHOD)
            except httpx.HTTPError as e:
                raise ProbeError(f"Failed to fetch node info: {e}") from e
        return result if isinstance(result, dict) else {}
