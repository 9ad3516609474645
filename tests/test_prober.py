"""Tests for the JSON-RPC readiness prober."""

import json

import httpx
import pytest

from sandbox_harness.sandbox.errors import ProbeError
from sandbox_harness.sandbox.prober import NodeProber

NODE_URL = "http://localhost:8080"


def rpc_result(request: httpx.Request, result: object) -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


class TestWaitReady:
    """Tests for wait_ready polling."""

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self):
        """Should keep polling until the node accepts connections."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return rpc_result(request, {"nodeVersion": "0.87.2"})

        prober = NodeProber(NODE_URL, interval=0.01, transport=httpx.MockTransport(handler))

        await prober.wait_ready()

        assert len(attempts) == 3
        body = json.loads(attempts[-1].content)
        assert body["method"] == "node_getNodeInfo"
        assert body["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_wait(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        prober = NodeProber(
            NODE_URL, interval=0.01, max_wait=0.05, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(ProbeError, match="not reachable"):
            await prober.wait_ready()

    @pytest.mark.asyncio
    async def test_retries_error_status_while_booting(self):
        """A 503 from a node that is still starting is retried, not fatal."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, text="starting")
            return rpc_result(request, {"nodeVersion": "0.87.2"})

        prober = NodeProber(
            NODE_URL, interval=0.01, max_wait=5, transport=httpx.MockTransport(handler)
        )

        await prober.wait_ready()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_rpc_error_while_booting(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "busy"}},
                )
            return rpc_result(request, {})

        prober = NodeProber(
            NODE_URL, interval=0.01, max_wait=5, transport=httpx.MockTransport(handler)
        )

        await prober.wait_ready()

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_error_status_reported_after_max_wait(self):
        """Should give up with the last error once the budget runs out."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal error")

        prober = NodeProber(
            NODE_URL, interval=0.01, max_wait=0.05, transport=httpx.MockTransport(handler)
        )

        with pytest.raises(ProbeError, match="not reachable.*HTTP 500") as exc_info:
            await prober.wait_ready()

        assert isinstance(exc_info.value.__cause__, ProbeError)

    @pytest.mark.asyncio
    async def test_non_object_body_is_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, content=b"null")
            return rpc_result(request, {})

        prober = NodeProber(
            NODE_URL, interval=0.01, max_wait=5, transport=httpx.MockTransport(handler)
        )

        await prober.wait_ready()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_custom_method(self):
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(json.loads(request.content)["method"])
            return rpc_result(request, {})

        prober = NodeProber(
            NODE_URL, method="pxe_getNodeInfo", transport=httpx.MockTransport(handler)
        )

        await prober.wait_ready()

        assert methods == ["pxe_getNodeInfo"]


class TestGetNodeInfo:
    """Tests for node metadata retrieval."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return rpc_result(request, {"nodeVersion": "0.87.2", "l1ChainId": 31337})

        prober = NodeProber(NODE_URL, transport=httpx.MockTransport(handler))

        info = await prober.get_node_info()

        assert info["nodeVersion"] == "0.87.2"

    @pytest.mark.asyncio
    async def test_non_dict_result_becomes_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return rpc_result(request, None)

        prober = NodeProber(NODE_URL, transport=httpx.MockTransport(handler))

        assert await prober.get_node_info() == {}

    @pytest.mark.asyncio
    async def test_uses_node_info_method_regardless_of_liveness_method(self):
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(json.loads(request.content)["method"])
            return rpc_result(request, {"nodeVersion": "0.87.2"})

        prober = NodeProber(
            NODE_URL, method="node_isReady", transport=httpx.MockTransport(handler)
        )

        info = await prober.get_node_info()

        assert methods == ["node_getNodeInfo"]
        assert info["nodeVersion"] == "0.87.2"

    @pytest.mark.asyncio
    async def test_list_body_raises_probe_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[1, 2])

        prober = NodeProber(NODE_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(ProbeError, match="malformed"):
            await prober.get_node_info()

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        prober = NodeProber(NODE_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(ProbeError, match="Failed to fetch node info"):
            await prober.get_node_info()
