"""
Runtime settings read from ``MCP_VETTER_*`` environment variables.

Command-line flags are applied on top with ``with_overrides``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

ENV_PREFIX = "MCP_VETTER_"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    connect_timeout: float = Field(default=30.0, gt=0, description="Seconds allowed for connect and handshake")
    health_timeout: float = Field(default=5.0, gt=0, description="Seconds allowed for the /health check")
    oauth_port: int = Field(default=9876, gt=0, lt=65536, description="Port of the OAuth callback listener")
    oauth_timeout: float = Field(default=120.0, gt=0, description="Seconds to wait for the browser callback")
    log_dir: Optional[Path] = Field(default=None, description="Directory for session logs")

    @field_validator("log_dir", mode="before")
    @classmethod
    def _expand_log_dir(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return Path(value).expanduser() if value else None
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            return cls()
        except ValidationError as exc:
            error = exc.errors()[0]
            name = f"{ENV_PREFIX}{str(error['loc'][0]).upper()}" if error["loc"] else ENV_PREFIX.rstrip("_")
            raise ConfigError(f"Invalid value for {name}: {error.get('input')!r} ({error['msg']})") from exc

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied (CLI flags win over env)."""
        return self.model_copy(update={k: v for k, v in overrides.items() if v is not None})
