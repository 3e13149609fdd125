"""
Unit tests for the negotiate module.

HTTP negotiation is driven through an injected transport factory whose fake
transports follow a script of behaviours, so fallback, auth and timeout paths
can be checked without a network.
"""

import asyncio
import os
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from mcp_vetter.auth import OAuthFlowError
from mcp_vetter.errors import (
    AuthenticationRequired,
    AuthorizationStartError,
    NetworkErrorKind,
    ServerConnectionError,
    TransportError,
    UnauthorizedError,
)
from mcp_vetter.models import HttpTarget, StdioTarget, TransportKind
from mcp_vetter.negotiate import fetch_auth_challenge, negotiate
from mcp_vetter.transports import Transport, make_transport

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")
TARGET = HttpTarget(url="http://mcp.test/mcp")

INIT_RESULT = {"protocolVersion": "2025-06-18", "capabilities": {}, "serverInfo": {"name": "fake", "version": "9"}}


class FakeTransport(Transport):
    def __init__(self, kind, behaviour, events, auth=None):
        super().__init__()
        self.kind = kind
        self.behaviour = behaviour
        self.events = events
        self.auth = auth
        self.starts = 0
        self.closes = 0
        self.auth_code = None

    async def start(self):
        self.starts += 1
        self._started = True
        self.events.append(("start", self.kind))
        if self.behaviour == "unauthorized":
            if self.auth is not None:
                await self.auth.begin_authorization("http://mcp.test/mcp", "Bearer realm=test")
            raise UnauthorizedError(401, "Bearer realm=test")
        if self.behaviour == "refused":
            raise httpx.ConnectError("[Errno 111] Connection refused")
        if self.behaviour == "dns":
            raise httpx.ConnectError("[Errno -2] Name or service not known")
        if self.behaviour == "boom":
            raise ValueError("protocol violation")

    async def request(self, method, params=None):
        self._ensure_open()
        if self.behaviour == "hang":
            await asyncio.sleep(10)
        return INIT_RESULT

    async def notify(self, method, params=None):
        self._ensure_open()

    async def close(self):
        self.closes += 1
        self._closed = True
        self.events.append(("close", self.kind))

    async def finish_auth(self, code):
        self.auth_code = code
        self.events.append(("finish_auth", code))


class Script:
    """Transport factory that hands out fakes following per-kind behaviour queues."""

    def __init__(self, streamable, sse=()):
        self.queues = {TransportKind.streamable_http: list(streamable), TransportKind.sse: list(sse)}
        self.created = []
        self.events = []

    def __call__(self, kind, url, *, headers=None, auth=None, timeout=30.0):
        transport = FakeTransport(kind, self.queues[kind].pop(0), self.events, auth=auth)
        self.created.append(transport)
        return transport

    @property
    def starts(self):
        return sum(t.starts for t in self.created)

    @property
    def closes(self):
        return sum(t.closes for t in self.created)


class FakeProvider:
    def __init__(self, events, delay=0.05, code="code-123"):
        self.events = events
        self.delay = delay
        self.code = code
        self.waits = 0

    async def authorization_headers(self):
        return {}

    async def begin_authorization(self, server_url, www_authenticate):
        self.events.append(("begin_authorization", server_url))

    async def wait_for_authorization_code(self):
        self.waits += 1
        await asyncio.sleep(self.delay)
        self.events.append(("code", self.code))
        return self.code

    async def finish_auth(self, server_url, code):
        pass


def _challenge_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpFallback:
    """Test primary then secondary transport ordering."""

    def test_primary_success(self):
        """Test that a working primary is used without trying SSE."""
        script = Script(["ok"], ["ok"])
        channel = asyncio.run(negotiate(TARGET, transport_factory=script))
        assert channel.kind is TransportKind.streamable_http
        assert channel.server_name == "fake"
        assert channel.authenticated is False
        assert len(script.created) == 1

    def test_fallback_to_sse(self):
        """Test that a non-auth primary failure falls back to SSE exactly once."""
        script = Script(["boom"], ["ok"])
        channel = asyncio.run(negotiate(TARGET, transport_factory=script))
        assert channel.kind is TransportKind.sse
        assert [t.kind for t in script.created] == [TransportKind.streamable_http, TransportKind.sse]
        assert script.created[0].closes == 1
        assert script.created[1].closes == 0

    def test_secondary_network_failure_is_classified(self):
        """Test that a refused connection on both transports becomes ServerConnectionError."""
        script = Script(["refused"], ["refused"])
        with pytest.raises(ServerConnectionError) as exc_info:
            asyncio.run(negotiate(TARGET, transport_factory=script))
        assert exc_info.value.kind is NetworkErrorKind.connection_refused
        assert "Connection refused" in str(exc_info.value)
        assert script.starts == script.closes == 2

    def test_host_not_found(self):
        """Test the host-not-found classification and message."""
        script = Script(["dns"], ["dns"])
        with pytest.raises(ServerConnectionError) as exc_info:
            asyncio.run(negotiate(TARGET, transport_factory=script))
        assert exc_info.value.kind is NetworkErrorKind.host_not_found
        assert "mcp.test" in str(exc_info.value)

    def test_unclassified_failure_passes_through(self):
        """Test that a non-network secondary failure is re-raised unchanged."""
        script = Script(["refused"], ["boom"])
        with pytest.raises(ValueError, match="protocol violation"):
            asyncio.run(negotiate(TARGET, transport_factory=script))
        assert script.starts == script.closes == 2


class TestTimeout:
    """Test the connect timeout."""

    def test_timeout_closes_and_falls_back(self):
        """Test that a hanging primary is closed and SSE is tried."""
        script = Script(["hang"], ["ok"])
        channel = asyncio.run(negotiate(TARGET, transport_factory=script, timeout=0.05))
        assert channel.kind is TransportKind.sse
        assert script.created[0].closes == 1

    def test_timeout_on_both(self):
        """Test that timing out twice is reported as a timed-out connection."""
        script = Script(["hang"], ["hang"])
        started = time.perf_counter()
        with pytest.raises(ServerConnectionError) as exc_info:
            asyncio.run(negotiate(TARGET, transport_factory=script, timeout=0.05))
        assert time.perf_counter() - started < 2
        assert exc_info.value.kind is NetworkErrorKind.timed_out
        assert script.starts == script.closes == 2


class TestAuthChallenge:
    """Test authentication-required handling without a provider."""

    def test_challenge_returned(self):
        """Test that a 401 yields AuthenticationRequired with harvested details."""

        def handler(request):
            return httpx.Response(
                401,
                headers={"www-authenticate": 'Bearer resource_metadata="http://mcp.test/.well-known/x"'},
                json={"error": "invalid_token", "error_description": "Token missing"},
            )

        script = Script(["unauthorized"], ["unauthorized"])

        async def run():
            async with _challenge_client(handler) as client:
                return await negotiate(TARGET, transport_factory=script, http_client=client)

        with pytest.raises(AuthenticationRequired) as exc_info:
            asyncio.run(run())
        challenge = exc_info.value.challenge
        assert challenge.status_code == 401
        assert challenge.www_authenticate_header.startswith("Bearer resource_metadata=")
        assert challenge.error_description == "Token missing"
        assert challenge.message == "Token missing"
        assert len(script.created) == 1
        assert script.starts == script.closes

    def test_auth_on_secondary(self):
        """Test that SSE asking for auth after a primary failure also yields a challenge."""

        def handler(request):
            return httpx.Response(401, headers={"www-authenticate": "Bearer"})

        script = Script(["boom"], ["unauthorized"])

        async def run():
            async with _challenge_client(handler) as client:
                return await negotiate(TARGET, transport_factory=script, http_client=client)

        with pytest.raises(AuthenticationRequired):
            asyncio.run(run())
        assert script.starts == script.closes == 2

    def test_fetch_auth_challenge_failure_is_empty(self):
        """Test that a failing side request yields an empty challenge."""

        def handler(request):
            raise httpx.ConnectError("refused")

        async def run():
            async with _challenge_client(handler) as client:
                return await fetch_auth_challenge("http://mcp.test/mcp", 401, client=client)

        challenge = asyncio.run(run())
        assert challenge.status_code == 401
        assert challenge.www_authenticate_header is None
        assert challenge.error_description is None
        assert challenge.message == "Authentication required"

    def test_fetch_auth_challenge_plain_body(self):
        """Test that a non-JSON body is kept as the description."""

        def handler(request):
            return httpx.Response(401, text="Unauthorized: sign in first")

        async def run():
            async with _challenge_client(handler) as client:
                return await fetch_auth_challenge("http://mcp.test/mcp", client=client)

        assert asyncio.run(run()).error_description == "Unauthorized: sign in first"


class TestOAuthRetry:
    """Test the single retry after an authorization code arrives."""

    def test_retry_after_code(self):
        """Test that negotiation waits for the code, then connects once on a new transport."""
        script = Script(["unauthorized", "ok"])
        provider = FakeProvider(script.events, delay=0.1)
        started = time.perf_counter()
        channel = asyncio.run(negotiate(TARGET, provider, transport_factory=script))
        assert time.perf_counter() - started >= 0.09
        assert channel.authenticated is True
        assert channel.kind is TransportKind.streamable_http
        assert provider.waits == 1
        assert len(script.created) == 2
        first, retry = script.created
        assert first is not retry
        assert retry.auth_code == "code-123"
        assert first.closes == 1
        names = [e[0] for e in script.events]
        assert names.index("code") < names.index("finish_auth") < len(names) - 1
        assert script.events[-1] == ("start", TransportKind.streamable_http)

    def test_retry_failure_propagates(self):
        """Test that a failed retry is raised unchanged and never retried or sent to SSE."""
        script = Script(["unauthorized", "boom"], ["ok"])
        provider = FakeProvider(script.events, delay=0.01)
        with pytest.raises(ValueError, match="protocol violation"):
            asyncio.run(negotiate(TARGET, provider, transport_factory=script))
        assert provider.waits == 1
        assert len(script.created) == 2
        assert all(t.kind is TransportKind.streamable_http for t in script.created)
        assert script.starts == script.closes == 2

    def test_retry_unauthorized_again_propagates(self):
        """Test that a second 401 after the code is not retried."""
        script = Script(["unauthorized", "unauthorized"])
        provider = FakeProvider(script.events, delay=0.01)
        with pytest.raises(UnauthorizedError):
            asyncio.run(negotiate(TARGET, provider, transport_factory=script))
        assert provider.waits == 1

    def test_failed_authorization_start_is_final(self):
        """Test that a provider failing to start authorization stops negotiation without SSE."""
        kinds = []

        def factory(kind, url, *, headers=None, auth=None, timeout=30.0):
            kinds.append(kind)
            return make_transport(
                kind,
                url,
                headers=headers,
                auth=auth,
                timeout=timeout,
                http_transport=httpx.MockTransport(lambda request: httpx.Response(401)),
            )

        class BrokenProvider(FakeProvider):
            begins = 0

            async def begin_authorization(self, server_url, www_authenticate):
                self.begins += 1
                raise OAuthFlowError("metadata discovery failed")

        provider = BrokenProvider([])
        with pytest.raises(AuthorizationStartError, match="metadata discovery failed"):
            asyncio.run(negotiate(TARGET, provider, transport_factory=factory))
        assert kinds == [TransportKind.streamable_http]
        assert provider.begins == 1
        assert provider.waits == 0


class TestLogging:
    """Test that attempts are written to the passed logger."""

    def test_attempts_are_logged(self):
        """Test the fallback path leaves a trail of events."""
        log = MagicMock()
        script = Script(["refused"], ["ok"])
        asyncio.run(negotiate(TARGET, log=log, transport_factory=script))
        log.bind.assert_called_once_with(url="http://mcp.test/mcp")
        bound = log.bind.return_value
        events = [c.args[0] for c in bound.info.call_args_list + bound.warning.call_args_list]
        assert "connect.attempt" in events
        assert "connect.fallback" in events
        assert "connect.failed" in events
        assert "connect.ok" in events


class TestStdio:
    """Test stdio negotiation against real subprocesses."""

    def test_success(self):
        """Test a spawned server completes the handshake."""

        async def run():
            channel = await negotiate(StdioTarget(command=sys.executable, args=(FAKE_SERVER,)))
            async with channel:
                return channel

        channel = asyncio.run(run())
        assert channel.kind is TransportKind.stdio
        assert channel.server_name == "fake-server"
        assert channel.released

    def test_command_not_found(self):
        """Test that a missing executable is a command-not-found connection error."""
        with pytest.raises(ServerConnectionError) as exc_info:
            asyncio.run(negotiate(StdioTarget(command="no-such-mcp-server-binary-xyz")))
        assert exc_info.value.kind is NetworkErrorKind.command_not_found
        assert "no-such-mcp-server-binary-xyz" in str(exc_info.value)

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permission_denied(self, tmp_path):
        """Test that a non-executable file is reported as permission denied."""
        script = tmp_path / "server.sh"
        script.write_text("#!/bin/sh\n")
        os.chmod(script, 0o644)
        with pytest.raises(ServerConnectionError) as exc_info:
            asyncio.run(negotiate(StdioTarget(command=str(script))))
        assert exc_info.value.kind is NetworkErrorKind.permission_denied

    def test_server_exit_passes_through(self):
        """Test that a server dying during the handshake is not a connection error."""
        with pytest.raises(TransportError):
            asyncio.run(negotiate(StdioTarget(command=sys.executable, args=(FAKE_SERVER, "--exit"))))
