from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _ServerModel(_Model):
    """Shape reported by a server; unknown keys are kept so reports stay verbatim."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class HttpTarget(_Model):
    model_config = ConfigDict(frozen=True)

    mode: Literal["http"] = "http"
    url: str

    def describe(self) -> str:
        return self.url


class StdioTarget(_Model):
    model_config = ConfigDict(frozen=True)

    mode: Literal["stdio"] = "stdio"
    command: str
    args: tuple[str, ...] = ()

    def describe(self) -> str:
        return " ".join([self.command, *self.args])


Target = Union[HttpTarget, StdioTarget]


class TransportKind(str, Enum):
    streamable_http = "streamable-http"
    sse = "sse"
    stdio = "stdio"


class AuthChallenge(_Model):
    model_config = ConfigDict(frozen=True)

    status_code: int = 401
    www_authenticate_header: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def message(self) -> str:
        return self.error_description or "Authentication required"


class ToolDef(_ServerModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Optional[Dict[str, Any]] = None
    annotations: Optional[Dict[str, Any]] = None

    @field_validator("input_schema", mode="before")
    @classmethod
    def _schema_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    def properties(self) -> Dict[str, Any]:
        props = self.input_schema.get("properties")
        return props if isinstance(props, dict) else {}

    def required(self) -> List[str]:
        required = self.input_schema.get("required")
        if not isinstance(required, list):
            return []
        return [name for name in required if isinstance(name, str)]


class ResourceDef(_ServerModel):
    uri: str
    name: str = ""
    description: Optional[str] = None
    mime_type: Optional[str] = None


class PromptArgument(_ServerModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptDef(_ServerModel):
    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


class HealthResult(_Model):
    available: bool
    status: Optional[int] = None
    error: Optional[str] = None


class CapabilitySnapshot(_Model):
    server_name: Optional[str] = None
    server_version: Optional[str] = None
    transport: Optional[TransportKind] = None
    tools: List[ToolDef] = Field(default_factory=list)
    tools_elapsed_ms: float = 0.0
    tools_error: Optional[str] = None
    resources: Optional[List[ResourceDef]] = None
    resources_supported: bool = False
    resources_elapsed_ms: Optional[float] = None
    prompts: Optional[List[PromptDef]] = None
    prompts_supported: bool = False
    prompts_elapsed_ms: Optional[float] = None
    health: Optional[HealthResult] = None


class Severity(str, Enum):
    error = "error"
    warning = "warning"
    info = "info"

    @property
    def rank(self) -> int:
        return {"error": 0, "warning": 1, "info": 2}[self.value]


class Finding(_Model):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: Severity
    message: str
    tool_name: Optional[str] = None
    input_name: Optional[str] = None

    @property
    def location(self) -> str:
        if self.tool_name is None:
            return "server"
        if self.input_name:
            return f"{self.tool_name}.{self.input_name}"
        return self.tool_name


class Report(_Model):
    target: str
    snapshot: CapabilitySnapshot
    findings: List[Finding]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> Dict[str, int]:
        totals: Dict[str, int] = {s.value: 0 for s in Severity}
        for f in self.findings:
            totals[f.severity.value] += 1
        totals["tools"] = len(self.snapshot.tools)
        return totals
