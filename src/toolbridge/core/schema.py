"""
Schema definitions for planner <-> orchestrator <-> tool messages.

These data models serve as the contract between the model gateway, the orchestration pipeline,
the capability dispatcher and the HTTP layer.  We keep them separate from runtime logic so they
can be imported anywhere without side-effects.

Wire names follow the API contract (``toolId``, ``success``, ``executedAt`` ...) through pydantic
aliases; Python code always uses the snake_case field names.
"""

from __future__ import annotations

from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware "now" used for every timestamp the core produces."""
    return datetime.now(timezone.utc)


def _dedupe(ids: List[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for tool_id in ids:
        if tool_id not in seen:
            seen.add(tool_id)
            out.append(tool_id)
    return out


# ---------------------------------------------------------------------------
# Tool catalogue
# ---------------------------------------------------------------------------
class ParameterSpec(BaseModel):
    """Default value of a tool parameter, with optional numeric bounds."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    default: Any = None
    minimum: Optional[float] = Field(None, alias="min")
    maximum: Optional[float] = Field(None, alias="max")

    def clamp(self, value: float) -> float:
        """Clamp *value* into ``[minimum, maximum]`` where those bounds are declared."""
        if self.minimum is not None:
            value = max(self.minimum, value)
        if self.maximum is not None:
            value = min(self.maximum, value)
        return value


class ContainerBinding(BaseModel):
    """Tool served by the long-lived containerized HTTP service."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["container"] = "container"
    endpoint: Optional[str] = Field(None, description="Base URL; defaults to the container config")
    path: str


class CapabilityServerBinding(BaseModel):
    """Tool served by a capability server discovered through health polling."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["capability_server"] = "capability_server"
    server_name: str
    path: Optional[str] = Field(None, description="Tool-specific endpoint tried before call-tool")
    input_parameter: str = Field("input_path", description="Argument name for the primary file")


TransportBinding = Annotated[
    Union[ContainerBinding, CapabilityServerBinding], Field(discriminator="kind")
]


class ToolDescriptor(BaseModel):
    """Static catalogue entry for one tool."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    description: str = ""
    capabilities: frozenset[str] = frozenset()
    accepted_input_types: tuple[str, ...] = ()
    default_parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    transport_binding: TransportBinding

    def defaults(self) -> Dict[str, Any]:
        """Return ``{name: default}`` for every declared parameter."""
        return {name: spec.default for name, spec in self.default_parameters.items()}


class ContainerConfig(BaseModel):
    """Where the tool container lives and how to probe it."""

    model_config = ConfigDict(frozen=True)

    api_endpoint: Optional[str] = None
    health_check: str = "/health"


class CapabilityServerConfig(BaseModel):
    """How to reach, probe and (if needed) launch one capability server."""

    model_config = ConfigDict(frozen=True)

    name: str
    api_endpoint: str
    health_check: str = "/health"
    command: Optional[str] = None
    args: tuple[str, ...] = ()
    cwd: Optional[str] = None
    timeout_s: float = 300.0


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------
class FileRecord(BaseModel):
    """An already-validated upload.  Owned by the upload collaborator; read-only here."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    display_name: str = Field(..., alias="name")
    mime_type: str = Field(..., alias="type")
    size_bytes: int = Field(..., alias="size")
    storage_path: str = Field("", alias="path")

    def manifest_entry(self) -> Dict[str, Any]:
        """Name/type/size only; raw content and paths never reach a prompt."""
        return {"name": self.display_name, "type": self.mime_type, "size": self.size_bytes}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------
class Plan(BaseModel):
    """The tools, order and parameters chosen for one user turn."""

    model_config = ConfigDict(frozen=True)

    selected_tools: List[str]
    execution_order: List[str] = Field(default_factory=list)
    reasoning: str = ""
    tool_parameters: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    file_requirements: Dict[str, List[str]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _lenient_fields(cls, data: Any) -> Any:
        # Only the tool selection is binding; the other fields fall back to their defaults
        # when a model leaves them null or gives them the wrong shape.
        if not isinstance(data, dict):
            return data
        data = {key: value for key, value in data.items() if value is not None}
        for key in ("tool_parameters", "file_requirements"):
            if not isinstance(data.get(key, {}), dict):
                data.pop(key)
        if isinstance(data.get("tool_parameters"), dict):
            data["tool_parameters"] = {
                tool_id: params
                for tool_id, params in data["tool_parameters"].items()
                if isinstance(params, dict)
            }
        if isinstance(data.get("file_requirements"), dict):
            data["file_requirements"] = {
                tool_id: names
                for tool_id, names in data["file_requirements"].items()
                if isinstance(names, list)
            }
        if not isinstance(data.get("reasoning", ""), str):
            data["reasoning"] = str(data["reasoning"])
        if not data.get("execution_order"):
            data["execution_order"] = list(data.get("selected_tools") or [])
        return data

    @field_validator("selected_tools", "execution_order")
    @classmethod
    def _dedupe_ids(cls, ids: List[str]) -> List[str]:
        return _dedupe(ids)

    def restricted_to(self, allowed: set[str]) -> "Plan":
        """Return a copy with every tool id outside *allowed* dropped."""
        return self.model_copy(
            update={
                "selected_tools": [t for t in self.selected_tools if t in allowed],
                "execution_order": [t for t in self.execution_order if t in allowed],
            }
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
class ToolInvocation(BaseModel):
    """One attempt at running one tool."""

    tool_id: str
    files: List[FileRecord] = Field(default_factory=list)
    user_request: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of one planned tool; one per entry of the execution order."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tool_id: str = Field(..., alias="toolId")
    succeeded: bool = Field(..., alias="success")
    payload: Any = Field(None, alias="result")
    error_message: Optional[str] = Field(None, alias="error")
    executed_at: datetime = Field(default_factory=utcnow, alias="executedAt")
    retryable: bool = Field(True, exclude=True)

    @classmethod
    def ok(cls, tool_id: str, payload: Any) -> "ToolResult":
        """Build a successful result."""
        return cls(tool_id=tool_id, succeeded=True, payload=payload)

    @classmethod
    def failed(cls, tool_id: str, message: str, retryable: bool = True) -> "ToolResult":
        """Build a failed result."""
        return cls(tool_id=tool_id, succeeded=False, error_message=message, retryable=retryable)

    def to_wire(self) -> Dict[str, Any]:
        """Serialise with API field names, omitting the unused one of result/error."""
        data = self.model_dump(mode="json", by_alias=True)
        data.pop("error" if self.succeeded else "result", None)
        return data


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class ConversationTurn(BaseModel):
    """A single completed turn, kept in the bounded conversation context."""

    model_config = ConfigDict(frozen=True)

    user_message: str
    tools_used: List[str] = Field(default_factory=list)
    tool_results: List[ToolResult] = Field(default_factory=list)
    response: str
    timestamp: datetime = Field(default_factory=utcnow)

    def to_prompt_dict(self) -> Dict[str, Any]:
        """Compact view used when a turn is fed back into a prompt."""
        return {
            "userMessage": self.user_message,
            "toolsUsed": self.tools_used,
            "toolResults": [r.to_wire() for r in self.tool_results],
            "response": self.response,
            "timestamp": self.timestamp.isoformat(),
        }


class TurnResponse(BaseModel):
    """What the orchestrator hands back to its caller."""

    model_config = ConfigDict(populate_by_name=True)

    response: str
    tools_used: List[str] = Field(default_factory=list, alias="toolsUsed")
    confidence: float = Field(..., ge=0.0, le=1.0)
    conversation_id: str = Field(..., alias="conversationId")
    tool_results: List[ToolResult] = Field(default_factory=list, alias="toolResults")
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
class ModelKind(str, Enum):
    """The two families of generation backend."""

    HOSTED_API = "hosted_api"
    LOCAL_PROCESS = "local_process"


class ModelDescriptor(BaseModel):
    """Static catalogue entry for one generation model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    kind: ModelKind
    provider: str = Field(..., description="Backend table key: anthropic, openai, tgi, local")
    description: str = ""
    capabilities: tuple[str, ...] = ()
    supports_structured_orchestration: bool = False
    requires_credential: bool = False
    credential_setting: Optional[str] = Field(
        None, description="Settings attribute holding the API key, e.g. ANTHROPIC_API_KEY"
    )
    default: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)
