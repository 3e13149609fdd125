"""
JSON-RPC transports used to reach an MCP server.

Three ways in:

- ``StreamableHttpTransport``: one POST per message; the reply is either a JSON
  body or an SSE stream carrying the reply (MCP 2025-03-26 and later).
- ``SseTransport``: the legacy HTTP+SSE transport. A long-lived GET stream
  announces a POST endpoint via an ``endpoint`` event and carries every reply.
- ``StdioTransport``: a spawned subprocess speaking newline-delimited JSON.

Every transport hands out its own request ids so several requests can be in
flight over the same transport, and every ``close()`` is idempotent and a no-op
before ``start()``.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import deque
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any, Deque, Dict, Mapping, Optional, Sequence
from urllib.parse import urljoin

import httpx
from httpx_sse import EventSource, aconnect_sse

from .errors import (
    AuthorizationStartError,
    ChannelClosedError,
    CommandNotFoundError,
    CommandPermissionError,
    MethodNotFoundError,
    RpcError,
    TransportError,
    UnauthorizedError,
)
from .models import TransportKind

if TYPE_CHECKING:
    from .auth import CredentialProvider


LATEST_PROTOCOL_VERSION = "2025-06-18"

# Tool listings of large servers easily exceed asyncio's 64 KiB line default.
_STDIO_LINE_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_LINES = 20


def _unwrap(message: Mapping[str, Any]) -> Dict[str, Any]:
    error = message.get("error")
    if error is not None:
        if not isinstance(error, dict):
            raise RpcError(-32603, str(error))
        code = error.get("code", -32603)
        text = str(error.get("message", ""))
        if code == MethodNotFoundError.CODE:
            raise MethodNotFoundError(code, text, error.get("data"))
        raise RpcError(code, text, error.get("data"))
    result = message.get("result")
    return result if isinstance(result, dict) else {}


class _PendingRequests:
    """Futures for in-flight requests, resolved by response id."""

    def __init__(self) -> None:
        self._futures: Dict[Any, asyncio.Future[Dict[str, Any]]] = {}

    def add(self, req_id: Any) -> asyncio.Future[Dict[str, Any]]:
        fut: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._futures[req_id] = fut
        return fut

    def discard(self, req_id: Any) -> None:
        self._futures.pop(req_id, None)

    def resolve(self, message: Dict[str, Any]) -> bool:
        fut = self._futures.pop(message.get("id"), None)
        if fut is None or fut.done():
            return False
        fut.set_result(message)
        return True

    def fail_all(self, exc: BaseException) -> None:
        futures, self._futures = self._futures, {}
        for fut in futures.values():
            if not fut.done():
                fut.set_exception(exc)


class Transport:
    kind: TransportKind

    def __init__(self) -> None:
        self._next_id = 0
        self._started = False
        self._closed = False

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _ensure_open(self) -> None:
        if self._closed:
            raise ChannelClosedError(f"{self.kind.value} transport used after close")
        if not self._started:
            raise TransportError(f"{self.kind.value} transport used before start")

    def _request_payload(self, method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": self._new_id(), "method": method, "params": params or {}}

    async def start(self) -> None:
        raise NotImplementedError

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def finish_auth(self, code: str) -> None:
        raise TransportError(f"{self.kind.value} transport does not support authorization")


class _HttpTransport(Transport):
    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional["CredentialProvider"] = None,
        timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.auth = auth
        self.session_id: Optional[str] = None
        self._static_headers = dict(headers or {})
        self._timeout = timeout
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    def _open_client(self) -> httpx.AsyncClient:
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(self._timeout, connect=min(self._timeout, 10.0)),
            transport=self._http_transport,
        )
        self._started = True
        return self._client

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise TransportError(f"{self.kind.value} transport used before start")
        return self._client

    async def _headers(self, accept: str = "application/json, text/event-stream") -> Dict[str, str]:
        headers = {"Accept": accept, "MCP-Protocol-Version": LATEST_PROTOCOL_VERSION}
        headers.update(self._static_headers)
        if self.auth is not None:
            headers.update(await self.auth.authorization_headers())
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    async def _check_status(self, resp: httpx.Response) -> None:
        if resp.status_code == 401:
            www = resp.headers.get("www-authenticate")
            if self.auth is not None:
                try:
                    await self.auth.begin_authorization(self.url, www)
                except Exception as exc:
                    raise AuthorizationStartError(exc) from exc
            raise UnauthorizedError(resp.status_code, www)
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", errors="replace").strip()
            detail = f": {body[:200]}" if body else ""
            raise TransportError(f"HTTP {resp.status_code} from {resp.request.url}{detail}")

    async def finish_auth(self, code: str) -> None:
        if self.auth is None:
            raise TransportError("No credential provider available to finish authorization")
        await self.auth.finish_auth(self.url, code)


class StreamableHttpTransport(_HttpTransport):
    kind = TransportKind.streamable_http

    async def start(self) -> None:
        if self._started:
            return
        self._open_client()

    async def _read_sse_reply(self, resp: httpx.Response, expected_id: Any) -> Optional[Dict[str, Any]]:
        async for sse in EventSource(resp).aiter_sse():
            if sse.event not in ("message", ""):
                continue
            try:
                obj = json.loads(sse.data)
            except ValueError:
                continue
            if isinstance(obj, dict) and obj.get("id") == expected_id and ("result" in obj or "error" in obj):
                return obj
        return None

    async def _post(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = self._require_client()
        async with client.stream("POST", self.url, json=payload, headers=await self._headers()) as resp:
            await self._check_status(resp)
            sid = resp.headers.get("mcp-session-id")
            if sid:
                self.session_id = sid
            if resp.status_code == 202 or "id" not in payload:
                return None
            ctype = resp.headers.get("content-type", "")
            if "text/event-stream" in ctype:
                reply = await self._read_sse_reply(resp, payload["id"])
                if reply is None:
                    raise TransportError("No JSON-RPC response on SSE stream")
                return reply
            raw = await resp.aread()
        if not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise TransportError(f"Server sent a non-JSON response ({ctype or 'no content-type'})") from exc
        if isinstance(data, list):
            data = next((m for m in data if isinstance(m, dict) and m.get("id") == payload["id"]), None)
        if not isinstance(data, dict):
            raise TransportError("Server sent a response that is not a JSON-RPC object")
        return data

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._ensure_open()
        message = await self._post(self._request_payload(method, params))
        if message is None:
            raise TransportError(f"Server accepted {method} but sent no response")
        return _unwrap(message)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_open()
        await self._post({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        if not self._started or self._closed:
            return
        self._closed = True
        client = self._client
        if client is None:
            return
        try:
            if self.session_id:
                try:
                    await client.delete(self.url, headers=await self._headers())
                except httpx.HTTPError:
                    pass  # session teardown is advisory
        finally:
            await client.aclose()


class SseTransport(_HttpTransport):
    kind = TransportKind.sse

    def __init__(self, url: str, **kwargs: Any) -> None:
        super().__init__(url, **kwargs)
        self.post_url: Optional[str] = None
        self._pending = _PendingRequests()
        self._stack = AsyncExitStack()
        self._reader: Optional[asyncio.Task[None]] = None
        self._stream_error: Optional[TransportError] = None

    async def start(self) -> None:
        if self._started:
            return
        client = self._open_client()
        event_source = await self._stack.enter_async_context(
            aconnect_sse(client, "GET", self.url, headers=await self._headers(accept="text/event-stream"))
        )
        await self._check_status(event_source.response)
        ctype = event_source.response.headers.get("content-type", "")
        if "text/event-stream" not in ctype:
            raise TransportError(f"{self.url} did not open an event stream (content-type {ctype or 'missing'})")
        endpoint: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._reader = asyncio.create_task(self._read_events(event_source, endpoint))
        self.post_url = await endpoint

    async def _read_events(self, event_source: EventSource, endpoint: asyncio.Future[str]) -> None:
        try:
            async for sse in event_source.aiter_sse():
                if sse.event == "endpoint":
                    if not endpoint.done():
                        endpoint.set_result(urljoin(self.url, sse.data.strip()))
                    continue
                if sse.event != "message":
                    continue
                try:
                    message = json.loads(sse.data)
                except ValueError:
                    continue
                if isinstance(message, dict):
                    self._pending.resolve(message)
            error = TransportError("SSE stream closed by server")
        except (httpx.HTTPError, OSError, ValueError) as exc:
            error = TransportError(f"SSE stream failed: {type(exc).__name__}: {exc}")
            error.__cause__ = exc
        self._stream_error = error
        if not endpoint.done():
            endpoint.set_exception(error)
        self._pending.fail_all(error)

    async def _send(self, payload: Dict[str, Any]) -> None:
        client = self._require_client()
        if self.post_url is None:
            raise TransportError("SSE server has not announced a message endpoint")
        resp = await client.post(self.post_url, json=payload, headers=await self._headers())
        await self._check_status(resp)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._ensure_open()
        payload = self._request_payload(method, params)
        fut = self._pending.add(payload["id"])
        try:
            if self._stream_error is not None:
                raise self._stream_error
            await self._send(payload)
            message = await fut
        finally:
            self._pending.discard(payload["id"])
        return _unwrap(message)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_open()
        await self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        if not self._started or self._closed:
            return
        self._closed = True
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._pending.fail_all(ChannelClosedError("SSE transport closed"))
        try:
            await self._stack.aclose()
        finally:
            if self._client is not None:
                await self._client.aclose()


class StdioTransport(Transport):
    kind = TransportKind.stdio

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        shutdown_timeout: float = 2.0,
    ) -> None:
        super().__init__()
        self.command = command
        self.args = list(args)
        self._env = dict(env) if env else None
        self._shutdown_timeout = shutdown_timeout
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._pending = _PendingRequests()
        self._write_lock = asyncio.Lock()
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._tasks: list[asyncio.Task[None]] = []
        self._eof_error: Optional[TransportError] = None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def start(self) -> None:
        if self._started:
            return
        env = {**os.environ, **self._env} if self._env else None
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STDIO_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise CommandNotFoundError(f"Command not found: {self.command}") from exc
        except PermissionError as exc:
            raise CommandPermissionError(f"Permission denied: {self.command}") from exc
        if proc.stdout is None or proc.stderr is None:
            raise TransportError(f"Could not attach to the pipes of {self.command}")
        self._proc = proc
        self._started = True
        self._tasks = [
            asyncio.create_task(self._read_stdout(proc, proc.stdout)),
            asyncio.create_task(self._drain_stderr(proc.stderr)),
        ]

    async def _drain_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            line = await stderr.readline()
            if not line:
                return
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    async def _read_stdout(self, proc: asyncio.subprocess.Process, stdout: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    continue  # servers sometimes log to stdout
                if not isinstance(message, dict):
                    continue
                if "method" in message:
                    if "id" in message:
                        await self._answer_server_request(message)
                    continue
                self._pending.resolve(message)
            code = proc.returncode
            exited = f" with code {code}" if code is not None else ""
            error = TransportError(f"Server process exited{exited} before responding. Stderr: {self.stderr_tail}")
        except (ValueError, OSError) as exc:
            error = TransportError(f"Failed to read from server process: {exc}")
            error.__cause__ = exc
        self._eof_error = error
        self._pending.fail_all(error)

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": MethodNotFoundError.CODE, "message": f"Method not found: {message.get('method')}"},
            }
        try:
            await self._write(reply)
        except TransportError:
            pass  # the reader notices the dead pipe on its next read

    async def _write(self, message: Dict[str, Any]) -> None:
        stdin = self._proc.stdin if self._proc is not None else None
        if stdin is None:
            raise TransportError("stdio transport used before start")
        data = (json.dumps(message) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise TransportError(f"Failed to write to server process: {exc}") from exc

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._ensure_open()
        payload = self._request_payload(method, params)
        fut = self._pending.add(payload["id"])
        try:
            if self._eof_error is not None:
                raise self._eof_error
            await self._write(payload)
            message = await fut
        finally:
            self._pending.discard(payload["id"])
        return _unwrap(message)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_open()
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        proc = self._proc
        if not self._started or self._closed or proc is None:
            return
        self._closed = True
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), self._shutdown_timeout)
            except TimeoutError:
                try:
                    proc.terminate()
                    await asyncio.wait_for(proc.wait(), self._shutdown_timeout)
                except ProcessLookupError:
                    pass
                except TimeoutError:
                    proc.kill()
                    await proc.wait()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._pending.fail_all(ChannelClosedError("stdio transport closed"))


def make_transport(
    kind: TransportKind,
    url: str,
    *,
    headers: Optional[Mapping[str, str]] = None,
    auth: Optional["CredentialProvider"] = None,
    timeout: float = 30.0,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Transport:
    """Default factory for the HTTP transport kinds tried by the negotiator."""

    kwargs: Dict[str, Any] = dict(headers=headers, auth=auth, timeout=timeout, http_transport=http_transport)
    if kind is TransportKind.streamable_http:
        return StreamableHttpTransport(url, **kwargs)
    if kind is TransportKind.sse:
        return SseTransport(url, **kwargs)
    raise ValueError(f"{kind.value} is not an HTTP transport kind")
