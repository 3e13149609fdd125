from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from . import __version__
from .errors import ChannelClosedError
from .models import PromptDef, ResourceDef, ToolDef, TransportKind
from .transports import LATEST_PROTOCOL_VERSION, Transport

CLIENT_NAME = "mcp-vetter"

# Guards against servers that hand out the same cursor forever.
_MAX_PAGES = 100

M = TypeVar("M", bound=BaseModel)


class Channel:
    """An initialized MCP session over one transport.

    The channel owns its transport: ``close()`` releases it exactly once and any
    later request raises ``ChannelClosedError``.
    """

    def __init__(self, transport: Transport, authenticated: bool = False) -> None:
        self.transport = transport
        self.authenticated = authenticated
        self.server_name: Optional[str] = None
        self.server_version: Optional[str] = None
        self.protocol_version: Optional[str] = None
        self.capabilities: Dict[str, Any] = {}
        self._released = False

    @property
    def kind(self) -> TransportKind:
        return self.transport.kind

    @property
    def released(self) -> bool:
        return self._released

    def _check(self) -> None:
        if self._released:
            raise ChannelClosedError("channel used after it was closed")

    async def open(self) -> "Channel":
        self._check()
        await self.transport.start()
        result = await self.transport.request(
            "initialize",
            {
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": __version__},
            },
        )
        info = result.get("serverInfo") or {}
        if isinstance(info, dict):
            self.server_name = info.get("name")
            self.server_version = info.get("version")
        caps = result.get("capabilities")
        self.capabilities = caps if isinstance(caps, dict) else {}
        self.protocol_version = result.get("protocolVersion")
        await self.transport.notify("notifications/initialized")
        return self

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities and self.capabilities[capability] is not None

    async def _list(self, method: str, key: str, model: Type[M]) -> List[M]:
        self._check()
        items: List[M] = []
        cursor: Optional[str] = None
        for _ in range(_MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await self.transport.request(method, params)
            raw = result.get(key) or []
            items.extend(model.model_validate(item) for item in raw)
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return items

    async def list_tools(self) -> List[ToolDef]:
        return await self._list("tools/list", "tools", ToolDef)

    async def list_resources(self) -> List[ResourceDef]:
        return await self._list("resources/list", "resources", ResourceDef)

    async def list_prompts(self) -> List[PromptDef]:
        return await self._list("prompts/list", "prompts", PromptDef)

    async def close(self) -> None:
        if self._released:
            return
        self._released = True
        await self.transport.close()

    async def __aenter__(self) -> "Channel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
