from __future__ import annotations

import json
import os
import re
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from .errors import ConfigError
from .models import HttpTarget, StdioTarget, Target

CONFIG_KEYS = ("mcpServers", "servers", "mcp")

# `localhost:3000/mcp` pasted without a scheme
_HOST_PORT = re.compile(r"^[^/\s]+:\d+(/.*)?$")


@dataclass(frozen=True)
class ConfigLocation:
    path: Path
    hint: str
    key: str


@dataclass(frozen=True)
class ServerEntry:
    name: str
    config: Dict[str, Any]
    source: str


def _parse_url(raw: str) -> Optional[str]:
    raw = raw.strip()
    if "://" not in raw and _HOST_PORT.match(raw):
        raw = f"http://{raw}"
    parsed = urlparse(raw)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return raw
    return None


def parse_target(url: Optional[str] = None, command: Optional[str] = None) -> Target:
    """Build a target from a URL or a shell-style command line; exactly one is required."""

    if url and command:
        raise ConfigError("Pass either a URL or --command, not both")
    if url:
        parsed = _parse_url(url)
        if parsed is None:
            raise ConfigError(f"'{url}' is not a valid http(s) URL")
        return HttpTarget(url=parsed)
    if command:
        try:
            parts = shlex.split(command)
        except ValueError as exc:
            raise ConfigError(f"Cannot parse --command: {exc}") from exc
        if not parts:
            raise ConfigError("--command is empty")
        return StdioTarget(command=parts[0], args=tuple(parts[1:]))
    raise ConfigError("No target given: pass a URL, --command or --config")


def claude_desktop_path() -> Optional[Path]:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) / "Claude" / "claude_desktop_config.json" if appdata else None
    return Path.home() / ".config" / "claude" / "config.json"


def config_locations(cwd: Optional[Path] = None) -> List[ConfigLocation]:
    base = Path(cwd) if cwd else Path.cwd()
    locations = [
        ConfigLocation(base / ".cursor" / "mcp.json", ".cursor/mcp.json", "mcpServers"),
        ConfigLocation(base / ".vscode" / "mcp.json", ".vscode/mcp.json", "servers"),
    ]
    desktop = claude_desktop_path()
    if desktop is not None:
        locations.append(ConfigLocation(desktop, "Claude Desktop", "mcpServers"))
    locations += [
        ConfigLocation(base / ".mcp.json", ".mcp.json", "mcpServers"),
        ConfigLocation(base / "opencode.json", "opencode.json", "mcp"),
        ConfigLocation(base / ".gemini" / "settings.json", ".gemini/settings.json", "mcpServers"),
    ]
    return locations


def parse_config_file(path: Path, key: Optional[str] = None) -> List[ServerEntry]:
    """Read the servers map of an MCP client config file.

    Without ``key`` the first of ``mcpServers``, ``servers`` and ``mcp`` that is
    present wins. Raises ``OSError`` or ``ValueError`` for unreadable files.
    """

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return []
    if key is None:
        key = next((k for k in CONFIG_KEYS if data.get(k)), None)
    servers = data.get(key) if key else None
    if not isinstance(servers, dict):
        return []
    return [
        ServerEntry(name=name, config=cfg, source=str(path)) for name, cfg in servers.items() if isinstance(cfg, dict)
    ]


def discover_servers(cwd: Optional[Path] = None) -> List[ServerEntry]:
    entries: List[ServerEntry] = []
    for location in config_locations(cwd):
        if not location.path.is_file():
            continue
        try:
            entries.extend(parse_config_file(location.path, location.key))
        except (OSError, ValueError):
            continue  # unreadable or invalid JSON
    return entries


def entry_to_target(entry: ServerEntry) -> Target:
    cfg = entry.config
    url = cfg.get("url")
    if isinstance(url, str) and url:
        parsed = _parse_url(url)
        if parsed is None:
            raise ConfigError(f'Cannot use server "{entry.name}": invalid url {url!r}')
        return HttpTarget(url=parsed)

    command = cfg.get("command")
    if isinstance(command, list):
        # OpenCode: ["cmd", "arg", ...]
        parts = [str(p) for p in command]
        if parts:
            return StdioTarget(command=parts[0], args=tuple(parts[1:]))
    elif isinstance(command, str) and command:
        args = cfg.get("args") or []
        return StdioTarget(command=command, args=tuple(str(a) for a in args))

    raise ConfigError(f'Cannot use server "{entry.name}": unsupported configuration')


def select_entry(entries: Sequence[ServerEntry], name: Optional[str] = None) -> ServerEntry:
    if not entries:
        raise ConfigError("No MCP servers found in config files")
    if name is not None:
        for entry in entries:
            if entry.name == name:
                return entry
        available = ", ".join(e.name for e in entries)
        raise ConfigError(f'No server named "{name}". Available: {available}')
    if len(entries) == 1:
        return entries[0]
    available = ", ".join(f"{e.name} ({e.source})" for e in entries)
    raise ConfigError(f"Several MCP servers configured; choose one with --server. Available: {available}")


def resolve_config_target(config_path: Optional[Path], server: Optional[str]) -> Target:
    if config_path is not None:
        try:
            entries = parse_config_file(config_path)
        except (OSError, ValueError) as exc:
            raise ConfigError(
                f"Error reading config file: {config_path}\n{exc}\n"
                "The config file may be corrupted or contain invalid JSON."
            ) from exc
    else:
        entries = discover_servers()
    return entry_to_target(select_entry(entries, server))
