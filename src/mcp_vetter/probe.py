from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse

import httpx

from .client import Channel
from .errors import MethodNotFoundError
from .log import BoundLogger, discard_logger
from .models import CapabilitySnapshot, HealthResult, HttpTarget, Target

DEFAULT_HEALTH_TIMEOUT = 5.0

T = TypeVar("T")


def health_url(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/health"


async def check_health(
    url: str,
    timeout: float = DEFAULT_HEALTH_TIMEOUT,
    client: Optional[httpx.AsyncClient] = None,
) -> HealthResult:
    """GET ``<origin>/health``. Any 2xx counts as available."""

    owns_client = client is None
    http = client or httpx.AsyncClient(follow_redirects=True)
    try:
        resp = await http.get(health_url(url), timeout=timeout)
    except Exception as exc:
        return HealthResult(available=False, error=f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
    finally:
        if owns_client:
            await http.aclose()
    if 200 <= resp.status_code < 300:
        return HealthResult(available=True, status=resp.status_code)
    return HealthResult(available=False, status=resp.status_code, error=f"HTTP {resp.status_code}")


async def _timed(fetch: Callable[[], Awaitable[T]]) -> Tuple[T, float]:
    started = time.perf_counter()
    result = await fetch()
    return result, (time.perf_counter() - started) * 1000.0


async def _optional_capability(
    channel: Channel,
    capability: str,
    fetch: Callable[[], Awaitable[List[Any]]],
    log: BoundLogger,
) -> Tuple[Optional[List[Any]], Optional[float]]:
    if not channel.supports(capability):
        log.info("probe.not_declared", capability=capability)
        return None, None
    try:
        items, elapsed = await _timed(fetch)
    except MethodNotFoundError:
        log.info("probe.not_supported", capability=capability)
        return None, None
    except Exception as exc:
        log.warning("probe.failed", capability=capability, error=f"{type(exc).__name__}: {exc}")
        return None, None
    log.info("probe.ok", capability=capability, count=len(items), elapsed_ms=round(elapsed, 1))
    return items, elapsed


async def probe(
    channel: Channel,
    target: Optional[Target] = None,
    *,
    log: Optional[BoundLogger] = None,
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
    include_health: bool = True,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CapabilitySnapshot:
    """Fetch tools, resources and prompts concurrently from an open channel.

    Each fetch is timed on its own and fails on its own: a resources or
    prompts failure leaves that capability ``None`` with ``supported=False``,
    a tools failure leaves an empty list and ``tools_error``. For HTTP targets
    a health check runs alongside. The channel is not closed here.
    """

    log = log or discard_logger()
    health_target = target if include_health and isinstance(target, HttpTarget) else None

    async def tools() -> Tuple[list, float, Optional[str]]:
        started = time.perf_counter()
        try:
            items = await channel.list_tools()
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000.0
            log.warning("probe.failed", capability="tools", error=f"{type(exc).__name__}: {exc}")
            return [], elapsed, str(exc) or type(exc).__name__
        elapsed = (time.perf_counter() - started) * 1000.0
        log.info("probe.ok", capability="tools", count=len(items), elapsed_ms=round(elapsed, 1))
        return items, elapsed, None

    async def health() -> Optional[HealthResult]:
        if health_target is None:
            return None
        result = await check_health(health_target.url, timeout=health_timeout, client=http_client)
        log.info("probe.health", available=result.available, status=result.status, error=result.error)
        return result

    (tool_list, tools_ms, tools_error), (resources, resources_ms), (prompts, prompts_ms), health_result = (
        await asyncio.gather(
            tools(),
            _optional_capability(channel, "resources", channel.list_resources, log),
            _optional_capability(channel, "prompts", channel.list_prompts, log),
            health(),
        )
    )

    return CapabilitySnapshot(
        server_name=channel.server_name,
        server_version=channel.server_version,
        transport=channel.kind,
        tools=tool_list,
        tools_elapsed_ms=tools_ms,
        tools_error=tools_error,
        resources=resources,
        resources_supported=resources is not None,
        resources_elapsed_ms=resources_ms,
        prompts=prompts,
        prompts_supported=prompts is not None,
        prompts_elapsed_ms=prompts_ms,
        health=health_result,
    )
