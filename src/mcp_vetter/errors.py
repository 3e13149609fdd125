"""
Error taxonomy shared by the negotiator, the probe and the CLI.

Callers branch on three outcomes of a connection attempt:

- ``AuthenticationRequired``: the server wants credentials we do not have.
- ``ServerConnectionError``: a network-level (or spawn-level) failure with a
  message a user can act on.
- anything else: passed through unchanged so the original cause stays visible.

The substring tables used to recognise network failures live in
``classify_network_error`` and nowhere else. They are heuristics over the text
that httpx, the OS resolver and asyncio put into their exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from .models import AuthChallenge


class VetterError(Exception):
    exit_code = 1


class ConfigError(VetterError):
    exit_code = 2


class AuthenticationRequired(VetterError):
    exit_code = 2

    def __init__(self, challenge: AuthChallenge) -> None:
        super().__init__(challenge.message)
        self.challenge = challenge


class NetworkErrorKind(str, Enum):
    host_not_found = "host-not-found"
    connection_refused = "connection-refused"
    timed_out = "timed-out"
    connection_reset = "connection-reset"
    unreachable = "unreachable"
    invalid_url = "invalid-url"
    command_not_found = "command-not-found"
    permission_denied = "permission-denied"


class ServerConnectionError(VetterError):
    exit_code = 2

    def __init__(self, kind: NetworkErrorKind, target: str, message: Optional[str] = None) -> None:
        super().__init__(message or describe_network_error(kind, target))
        self.kind = kind
        self.target = target


class TransportError(Exception):
    """Failure reported by a transport while talking to the server."""


class UnauthorizedError(TransportError):
    def __init__(self, status_code: int = 401, www_authenticate: Optional[str] = None) -> None:
        super().__init__(f"Server responded with HTTP {status_code}: authentication required")
        self.status_code = status_code
        self.www_authenticate = www_authenticate


class AuthorizationStartError(TransportError):
    """The credential provider could not start authorization after a 401.

    Final for the whole negotiation: no other transport is tried.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Could not start authorization: {cause}")


class RpcError(TransportError):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message
        self.data = data


class MethodNotFoundError(RpcError):
    CODE = -32601


class ChannelClosedError(RuntimeError):
    """A released channel was used again."""


class CommandNotFoundError(TransportError):
    pass


class CommandPermissionError(TransportError):
    pass


_NETWORK_PATTERNS: list[tuple[NetworkErrorKind, tuple[str, ...]]] = [
    (
        NetworkErrorKind.invalid_url,
        (
            "invalid url",
            "unsupported protocol",
            "missing an 'http://' or 'https://' protocol",
            "invalid port",
            "invalid non-printable ascii character in url",
        ),
    ),
    (
        NetworkErrorKind.host_not_found,
        (
            "enotfound",
            "name or service not known",
            "nodename nor servname",
            "getaddrinfo failed",
            "temporary failure in name resolution",
            "no address associated with hostname",
            "name resolution",
        ),
    ),
    (
        NetworkErrorKind.connection_refused,
        ("econnrefused", "connection refused", "all connection attempts failed", "connect call failed"),
    ),
    (NetworkErrorKind.timed_out, ("etimedout", "timed out", "timeout")),
    (
        NetworkErrorKind.connection_reset,
        ("econnreset", "connection reset", "server disconnected", "remoteprotocolerror", "fetch failed"),
    ),
    (
        NetworkErrorKind.unreachable,
        ("ehostunreach", "enetunreach", "network is unreachable", "no route to host", "host is unreachable"),
    ),
]


def _error_texts(exc: BaseException) -> list[str]:
    texts: list[str] = []
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        texts.append(f"{type(current).__name__}: {current}".lower())
        current = current.__cause__ or current.__context__
    return texts


def classify_network_error(exc: BaseException) -> Optional[NetworkErrorKind]:
    """Map an exception to a network failure category, or None if it is not one."""

    if isinstance(exc, CommandNotFoundError):
        return NetworkErrorKind.command_not_found
    if isinstance(exc, CommandPermissionError):
        return NetworkErrorKind.permission_denied
    texts = _error_texts(exc)
    for kind, patterns in _NETWORK_PATTERNS:
        if any(p in text for text in texts for p in patterns):
            return kind
    return None


def describe_network_error(kind: NetworkErrorKind, target: str) -> str:
    host = urlparse(target).netloc or target
    if kind is NetworkErrorKind.host_not_found:
        return f"Could not resolve host '{host}'. Check the hostname in {target}."
    if kind is NetworkErrorKind.connection_refused:
        return f"Connection refused by {host}. Is the MCP server running at {target}?"
    if kind is NetworkErrorKind.timed_out:
        return f"Connection to {target} timed out. The server may be slow, overloaded or unreachable."
    if kind is NetworkErrorKind.connection_reset:
        return f"Connection to {host} was reset before the MCP handshake completed."
    if kind is NetworkErrorKind.unreachable:
        return f"Network unreachable while connecting to {host}. Check your network connection."
    if kind is NetworkErrorKind.invalid_url:
        return f"'{target}' is not a valid server URL. This looks like a URL typo."
    if kind is NetworkErrorKind.command_not_found:
        return f"Command not found: {target}. Check that it is installed and on PATH."
    if kind is NetworkErrorKind.permission_denied:
        return f"Permission denied while starting {target}. Check that the file is executable."
    return f"Could not connect to {target}."
