"""
Turn a target into a live, initialized ``Channel``.

HTTP targets try Streamable HTTP first and fall back to the legacy SSE
transport. A 401 without a credential provider ends negotiation with
``AuthenticationRequired``; with a provider, the negotiator waits for the
authorization code, finishes the token exchange on a fresh transport and
connects exactly once more. Stdio targets get a single spawn and handshake.
"""

from __future__ import annotations

import asyncio
import json
from typing import Callable, Mapping, Optional

import httpx

from .auth import CredentialProvider
from .client import Channel
from .errors import (
    AuthenticationRequired,
    AuthorizationStartError,
    CommandNotFoundError,
    CommandPermissionError,
    NetworkErrorKind,
    ServerConnectionError,
    UnauthorizedError,
    classify_network_error,
)
from .log import BoundLogger, discard_logger
from .models import AuthChallenge, HttpTarget, StdioTarget, Target, TransportKind
from .transports import StdioTransport, Transport, make_transport

DEFAULT_CONNECT_TIMEOUT = 30.0

HTTP_TRANSPORT_ORDER = (TransportKind.streamable_http, TransportKind.sse)

TransportFactory = Callable[..., Transport]


async def fetch_auth_challenge(
    url: str,
    status_code: int = 401,
    client: Optional[httpx.AsyncClient] = None,
) -> AuthChallenge:
    """Best-effort GET against ``url`` to collect ``WWW-Authenticate`` and any error text.

    Never raises; when the request itself fails the challenge only carries the
    status code.
    """

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=10.0, follow_redirects=True)
    try:
        resp = await http.get(url, headers={"Accept": "application/json, text/event-stream"})
    except httpx.HTTPError:
        return AuthChallenge(status_code=status_code)
    finally:
        if owns_client:
            await http.aclose()

    header = resp.headers.get("www-authenticate")
    description: Optional[str] = None
    body = resp.text.strip()
    if body:
        try:
            data = json.loads(body)
        except ValueError:
            description = body[:500]
        else:
            if isinstance(data, dict):
                description = data.get("error_description") or data.get("message") or data.get("error")
                if description is not None:
                    description = str(description)
    return AuthChallenge(
        status_code=resp.status_code if resp.status_code in (401, 403) else status_code,
        www_authenticate_header=header,
        error_description=description,
    )


async def _open_channel(
    transport: Transport,
    *,
    timeout: float,
    log: BoundLogger,
    authenticated: bool = False,
) -> Channel:
    channel = Channel(transport, authenticated=authenticated)
    log.info("connect.attempt", transport=transport.kind.value, authenticated=authenticated)
    try:
        async with asyncio.timeout(timeout):
            await channel.open()
    except TimeoutError as exc:
        await channel.close()
        log.warning("connect.timeout", transport=transport.kind.value, timeout=timeout)
        raise TimeoutError("connection timed out") from exc
    except BaseException as exc:
        await channel.close()
        log.warning("connect.failed", transport=transport.kind.value, error=f"{type(exc).__name__}: {exc}")
        raise
    log.info(
        "connect.ok",
        transport=transport.kind.value,
        server=channel.server_name,
        version=channel.server_version,
        protocol=channel.protocol_version,
    )
    return channel


async def _authorize_and_retry(
    kind: TransportKind,
    url: str,
    credentials: CredentialProvider,
    *,
    factory: TransportFactory,
    headers: Optional[Mapping[str, str]],
    timeout: float,
    log: BoundLogger,
) -> Channel:
    log.info("oauth.waiting", transport=kind.value)
    code = await credentials.wait_for_authorization_code()
    log.info("oauth.code_received", transport=kind.value)
    transport = factory(kind, url, headers=headers, auth=credentials, timeout=timeout)
    try:
        await transport.finish_auth(code)
    except BaseException as exc:
        await transport.close()
        log.error("oauth.exchange_failed", error=f"{type(exc).__name__}: {exc}")
        raise
    return await _open_channel(transport, timeout=timeout, log=log, authenticated=True)


async def _negotiate_http(
    target: HttpTarget,
    credentials: Optional[CredentialProvider],
    *,
    log: BoundLogger,
    timeout: float,
    headers: Optional[Mapping[str, str]],
    factory: TransportFactory,
    http_client: Optional[httpx.AsyncClient],
) -> Channel:
    url = target.url
    failures: list[Exception] = []
    for kind in HTTP_TRANSPORT_ORDER:
        transport = factory(kind, url, headers=headers, auth=credentials, timeout=timeout)
        try:
            return await _open_channel(transport, timeout=timeout, log=log)
        except UnauthorizedError as exc:
            if credentials is None:
                challenge = await fetch_auth_challenge(url, exc.status_code, client=http_client)
                log.info("connect.auth_required", transport=kind.value, www_authenticate=challenge.www_authenticate_header)
                raise AuthenticationRequired(challenge) from exc
            return await _authorize_and_retry(
                kind, url, credentials, factory=factory, headers=headers, timeout=timeout, log=log
            )
        except AuthorizationStartError:
            log.error("oauth.start_failed", transport=kind.value)
            raise
        except Exception as exc:
            failures.append(exc)
            log.info("connect.fallback", transport=kind.value)

    last_error = failures[-1]
    kind_of_failure = classify_network_error(last_error)
    if kind_of_failure is not None:
        log.error("connect.network_error", kind=kind_of_failure.value)
        raise ServerConnectionError(kind_of_failure, url) from last_error
    raise last_error


async def _negotiate_stdio(target: StdioTarget, *, log: BoundLogger, timeout: float) -> Channel:
    transport = StdioTransport(target.command, target.args)
    log.info("spawn", command=target.command, args=list(target.args))
    try:
        return await _open_channel(transport, timeout=timeout, log=log)
    except CommandNotFoundError as exc:
        raise ServerConnectionError(NetworkErrorKind.command_not_found, target.command) from exc
    except CommandPermissionError as exc:
        raise ServerConnectionError(NetworkErrorKind.permission_denied, target.command) from exc


async def negotiate(
    target: Target,
    credentials: Optional[CredentialProvider] = None,
    *,
    log: Optional[BoundLogger] = None,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    headers: Optional[Mapping[str, str]] = None,
    transport_factory: Optional[TransportFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Channel:
    """Connect to ``target`` and return an initialized channel owned by the caller.

    Raises ``AuthenticationRequired`` when the server demands credentials that
    were not supplied, ``ServerConnectionError`` for recognised network or spawn
    failures, and lets every other error through unchanged.
    """

    log = log or discard_logger()
    if isinstance(target, StdioTarget):
        return await _negotiate_stdio(target, log=log, timeout=timeout)
    return await _negotiate_http(
        target,
        credentials,
        log=log.bind(url=target.url),
        timeout=timeout,
        headers=headers,
        factory=transport_factory or make_transport,
        http_client=http_client,
    )
