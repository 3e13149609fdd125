"""
Unit tests for the probe module.
"""

import asyncio
import sys
import time
from pathlib import Path

import httpx
import pytest

from mcp_vetter.client import Channel
from mcp_vetter.errors import MethodNotFoundError, RpcError
from mcp_vetter.models import HttpTarget, StdioTarget, TransportKind
from mcp_vetter.probe import check_health, health_url, probe
from mcp_vetter.transports import StdioTransport, Transport

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")


class ScriptedTransport(Transport):
    """Answers each method after a delay with a canned result or exception."""

    kind = TransportKind.streamable_http

    def __init__(self, capabilities, answers):
        super().__init__()
        self.capabilities = capabilities
        self.answers = answers
        self.calls = []

    async def start(self):
        self._started = True

    async def request(self, method, params=None):
        self._ensure_open()
        self.calls.append(method)
        if method == "initialize":
            return {"capabilities": self.capabilities, "serverInfo": {"name": "scripted", "version": "2.0"}}
        delay, answer = self.answers[method]
        await asyncio.sleep(delay)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    async def notify(self, method, params=None):
        self._ensure_open()

    async def close(self):
        self._closed = True


def _probe(transport, **kwargs):
    async def run():
        channel = await Channel(transport).open()
        try:
            return await probe(channel, **kwargs), channel
        finally:
            await channel.close()

    return asyncio.run(run())


ALL_CAPS = {"tools": {}, "resources": {}, "prompts": {}}


class TestProbe:
    """Test the concurrent capability probe."""

    def test_all_capabilities(self):
        """Test a server that answers every listing."""
        transport = ScriptedTransport(
            ALL_CAPS,
            {
                "tools/list": (0, {"tools": [{"name": "a", "inputSchema": {}}]}),
                "resources/list": (0, {"resources": [{"uri": "mem://x", "name": "x"}]}),
                "prompts/list": (0, {"prompts": [{"name": "p"}]}),
            },
        )
        snapshot, channel = _probe(transport)
        assert snapshot.server_name == "scripted"
        assert snapshot.server_version == "2.0"
        assert snapshot.transport is TransportKind.streamable_http
        assert [t.name for t in snapshot.tools] == ["a"]
        assert snapshot.tools_error is None
        assert snapshot.resources_supported and snapshot.resources[0].uri == "mem://x"
        assert snapshot.prompts_supported and snapshot.prompts[0].name == "p"
        assert snapshot.health is None
        assert channel.released

    def test_fetches_run_concurrently(self):
        """Test that wall time is close to the slowest fetch, not the sum."""
        transport = ScriptedTransport(
            ALL_CAPS,
            {
                "tools/list": (0.3, {"tools": []}),
                "resources/list": (0.3, {"resources": []}),
                "prompts/list": (0.3, {"prompts": []}),
            },
        )
        started = time.perf_counter()
        snapshot, _ = _probe(transport)
        elapsed = time.perf_counter() - started
        assert elapsed < 0.8
        assert snapshot.tools_elapsed_ms >= 250
        assert snapshot.resources_elapsed_ms >= 250
        assert snapshot.prompts_elapsed_ms >= 250

    def test_undeclared_capability_is_not_requested(self):
        """Test that a capability missing from initialize is reported unsupported."""
        transport = ScriptedTransport({"tools": {}}, {"tools/list": (0, {"tools": []})})
        snapshot, _ = _probe(transport)
        assert transport.calls == ["initialize", "tools/list"]
        assert snapshot.resources is None
        assert snapshot.resources_supported is False
        assert snapshot.resources_elapsed_ms is None
        assert snapshot.prompts is None
        assert snapshot.prompts_supported is False

    def test_method_not_found(self):
        """Test that a declared capability answering -32601 is unsupported."""
        transport = ScriptedTransport(
            ALL_CAPS,
            {
                "tools/list": (0, {"tools": []}),
                "resources/list": (0, MethodNotFoundError(-32601, "Method not found")),
                "prompts/list": (0, {"prompts": []}),
            },
        )
        snapshot, _ = _probe(transport)
        assert snapshot.resources_supported is False
        assert snapshot.resources is None
        assert snapshot.prompts_supported is True

    def test_partial_failure(self):
        """Test that one failing capability does not affect the others."""
        transport = ScriptedTransport(
            ALL_CAPS,
            {
                "tools/list": (0.3, {"tools": [{"name": "a"}]}),
                "resources/list": (0.3, RpcError(-32603, "backend down")),
                "prompts/list": (0.3, {"prompts": [{"name": "p"}]}),
            },
        )
        started = time.perf_counter()
        snapshot, _ = _probe(transport)
        assert time.perf_counter() - started < 0.8
        assert len(snapshot.tools) == 1
        assert snapshot.resources is None
        assert snapshot.resources_supported is False
        assert snapshot.prompts_supported is True

    def test_tools_failure(self):
        """Test that a tools failure leaves an empty list and an error message."""
        transport = ScriptedTransport(
            ALL_CAPS,
            {
                "tools/list": (0, RpcError(-32603, "tools backend down")),
                "resources/list": (0, {"resources": []}),
                "prompts/list": (0, {"prompts": []}),
            },
        )
        snapshot, _ = _probe(transport)
        assert snapshot.tools == []
        assert "tools backend down" in snapshot.tools_error
        assert snapshot.resources == []
        assert snapshot.resources_supported is True

    def test_health_for_http_target(self):
        """Test that an HTTP target gets a health check through the given client."""
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "ok"})

        transport = ScriptedTransport({"tools": {}}, {"tools/list": (0, {"tools": []})})

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                channel = await Channel(transport).open()
                async with channel:
                    return await probe(channel, HttpTarget(url="http://mcp.test:8080/mcp"), http_client=client)

        snapshot = asyncio.run(run())
        assert seen == ["http://mcp.test:8080/health"]
        assert snapshot.health.available is True
        assert snapshot.health.status == 200

    def test_health_failure_does_not_abort(self):
        """Test that an unexpected health check error still yields a full snapshot."""

        def handler(request):
            raise RuntimeError("health handler crashed")

        transport = ScriptedTransport({"tools": {}}, {"tools/list": (0, {"tools": [{"name": "a"}]})})

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                channel = await Channel(transport).open()
                async with channel:
                    return await probe(channel, HttpTarget(url="http://mcp.test/mcp"), http_client=client)

        snapshot = asyncio.run(run())
        assert [t.name for t in snapshot.tools] == ["a"]
        assert snapshot.health.available is False
        assert "health handler crashed" in snapshot.health.error

    def test_health_skipped(self):
        """Test that include_health=False and stdio targets skip the check."""
        transport = ScriptedTransport({"tools": {}}, {"tools/list": (0, {"tools": []})})
        snapshot, _ = _probe(transport, target=HttpTarget(url="http://mcp.test/mcp"), include_health=False)
        assert snapshot.health is None
        transport = ScriptedTransport({"tools": {}}, {"tools/list": (0, {"tools": []})})
        snapshot, _ = _probe(transport, target=StdioTarget(command="server"))
        assert snapshot.health is None


class TestProbeStdio:
    """Test the probe against the fake stdio server."""

    def test_resources_error_and_missing_prompts(self):
        """Test a real server with a failing listing and an undeclared capability."""

        async def run():
            transport = StdioTransport(sys.executable, [FAKE_SERVER, "--resources-error", "--no-prompts"])
            async with await Channel(transport).open() as channel:
                return await probe(channel, StdioTarget(command=sys.executable, args=(FAKE_SERVER,)))

        snapshot = asyncio.run(run())
        assert snapshot.server_name == "fake-server"
        assert snapshot.transport is TransportKind.stdio
        assert [t.name for t in snapshot.tools] == ["deleteUserEmail", "search"]
        assert snapshot.resources_supported is False
        assert snapshot.prompts_supported is False
        assert snapshot.health is None


class TestCheckHealth:
    """Test the health endpoint check."""

    def test_health_url(self):
        """Test that the path is replaced by /health on the same origin."""
        assert health_url("https://example.com:8443/v1/mcp?x=1") == "https://example.com:8443/health"

    @pytest.mark.parametrize(
        "status,available",
        [(200, True), (204, True), (404, False), (503, False)],
    )
    def test_status_codes(self, status, available):
        """Test that only 2xx counts as available."""

        async def run():
            transport = httpx.MockTransport(lambda request: httpx.Response(status))
            async with httpx.AsyncClient(transport=transport) as client:
                return await check_health("http://mcp.test/mcp", client=client)

        result = asyncio.run(run())
        assert result.available is available
        assert result.status == status
        if not available:
            assert result.error == f"HTTP {status}"

    def test_network_error(self):
        """Test that a failing request is captured rather than raised."""

        def handler(request):
            raise httpx.ConnectError("Connection refused")

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await check_health("http://mcp.test/mcp", client=client)

        result = asyncio.run(run())
        assert result.available is False
        assert result.status is None
        assert "Connection refused" in result.error

    def test_unexpected_error(self):
        """Test that a failure outside httpx.HTTPError is captured too."""

        def handler(request):
            raise RuntimeError("injected failure")

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await check_health("http://mcp.test/mcp", client=client)

        result = asyncio.run(run())
        assert result.available is False
        assert result.status is None
        assert result.error == "RuntimeError: injected failure"
