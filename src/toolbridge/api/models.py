"""
Pydantic models for toolbridge API requests and responses.

Field names on the wire are camelCase; the Python attributes stay snake_case.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from toolbridge.core.schema import (
    ConversationTurn,
    FileRecord,
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
class ChatMessageRequest(BaseModel):
    """Incoming user message with the files it refers to."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=10000, description="User message")
    conversation_id: Optional[str] = Field(
        None, alias="conversationId", description="Omit to start a new conversation"
    )
    files: List[FileRecord] = Field(default_factory=list)


class ModelSwitchRequest(BaseModel):
    """Make another model the active one."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="modelId")


class ApiKeyRequest(BaseModel):
    """Set the credential for a hosted model."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="modelId")
    api_key: str = Field(..., alias="apiKey", min_length=10)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class HistoryResponse(BaseModel):
    """Stored turns of one conversation, oldest first."""

    conversation_id: str = Field(..., alias="conversationId")
    history: List[Dict[str, Any]]

    @classmethod
    def from_turns(cls, conversation_id: str, turns: List[ConversationTurn]) -> "HistoryResponse":
        """Build the response from stored turns."""
        return cls(conversationId=conversation_id, history=[t.to_prompt_dict() for t in turns])


class ModelInfo(BaseModel):
    """Public view of a live model."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    provider: str
    supports_orchestration: bool
