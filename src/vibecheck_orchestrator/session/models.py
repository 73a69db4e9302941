"""Session entities: rounds and outputs, chat messages, and the patches that update them."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Variant = Literal["A", "B"]

PATCHABLE_FIELDS = frozenset(
    {
        "is_busy",
        "output_data",
        "got_error",
        "error_message",
        "critique_notes",
        "status_text",
        "total_time_ms",
        "grounding_metadata",
        "is_function_call",
    }
)


class Output(BaseModel):
    """One generation result and its lifecycle state."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    config_id: str
    mode_name: str
    mode_icon: str | None = None
    model_key: str
    variant: Variant | None = None
    is_busy: bool = True
    output_data: str | None = None
    got_error: bool = False
    error_message: str | None = None
    critique_notes: str | None = None
    status_text: str | None = None
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_time_ms: float | None = None
    grounding_metadata: dict[str, Any] | None = None
    is_function_call: bool = False

    @property
    def is_terminal(self) -> bool:
        return not self.is_busy and (self.output_data is not None or self.got_error)


class Round(BaseModel):
    """All outputs produced by one request."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    prompt: str
    prompt_image: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_ab_test: bool = False
    outputs: list[Output] = Field(default_factory=list)


class OutputPatch(BaseModel):
    """Partial update for one output, addressed by round id and output id."""

    model_config = ConfigDict(frozen=True)

    round_id: str
    output_id: str
    changes: dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.changes.get("is_busy") is False


class ChatResponse(BaseModel):
    """One profile's answer to a chat message."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    config_id: str
    profile_name: str
    profile_icon: str | None = None
    variant: Variant | None = None
    content: str
    notes: str
    review: str
    got_error: bool = False
    grounding_metadata: dict[str, Any] | None = None
    is_function_call: bool = False


class ChatMessage(BaseModel):
    """A user turn, or the model turn that collects every profile's response."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    role: Literal["user", "model"]
    content: str | None = None
    responses: list[ChatResponse] = Field(default_factory=list)
    is_thinking: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ChatUpdate(BaseModel):
    """Append a response to a model message, or settle its thinking flag."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    response: ChatResponse | None = None
    is_thinking: bool | None = None


class HistoryEntry(BaseModel):
    """A saved session snapshot."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: Literal["studio", "chat"] = "studio"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    preview: str
    data: list[Round] | list[ChatMessage]
