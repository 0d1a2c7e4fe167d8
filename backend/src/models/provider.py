"""Pydantic models for agent provider messages consumed by the session streamer.

Provider messages arrive as loosely-typed mappings. They are decoded once, at
the streamer boundary, into the closed tagged unions below. Anything that does
not decode is logged and skipped by the caller.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ContentBlock(_ProviderModel):
    """A block inside a provider message (text, tool_use, tool_result, thinking...)."""

    type: str = Field(..., description="Block kind")
    text: Optional[str] = Field(None, description="Text for text blocks")
    id: Optional[str] = Field(None, description="Tool use id for tool_use blocks")
    name: Optional[str] = Field(None, description="Tool name for tool_use blocks")
    input: Optional[Any] = Field(None, description="Tool input for tool_use blocks")
    tool_use_id: Optional[str] = Field(None, description="Originating id for tool_result blocks")
    content: Optional[Any] = Field(None, description="Tool output for tool_result blocks")
    is_error: Optional[bool] = Field(None, description="Whether the tool result is an error")


# ---------------------------------------------------------------------------
# stream_event payloads
# ---------------------------------------------------------------------------


class TextDelta(_ProviderModel):
    type: Literal["text_delta"]
    text: str = ""


class InputJsonDelta(_ProviderModel):
    type: Literal["input_json_delta"]
    partial_json: str = ""


class IgnoredDelta(_ProviderModel):
    """Delta kinds that carry nothing the session needs."""

    type: Literal["thinking_delta", "signature_delta", "citations_delta"]


BlockDelta = Annotated[
    Union[TextDelta, InputJsonDelta, IgnoredDelta], Field(discriminator="type")
]


class ContentBlockStart(_ProviderModel):
    type: Literal["content_block_start"]
    index: int
    content_block: ContentBlock


class ContentBlockDelta(_ProviderModel):
    type: Literal["content_block_delta"]
    index: int
    delta: BlockDelta


class ContentBlockStop(_ProviderModel):
    type: Literal["content_block_stop"]
    index: int


class StreamErrorDetail(_ProviderModel):
    type: Optional[str] = None
    message: Optional[str] = None


class StreamError(_ProviderModel):
    """Error sub-event the provider may interleave with content deltas."""

    type: Literal["error"]
    error: Optional[StreamErrorDetail] = None


class MessageLifecycle(_ProviderModel):
    """Message-level envelope events; decoded so they are not reported as unknown."""

    type: Literal["message_start", "message_delta", "message_stop", "ping"]


RawStreamEvent = Annotated[
    Union[ContentBlockStart, ContentBlockDelta, ContentBlockStop, StreamError, MessageLifecycle],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Top-level provider messages
# ---------------------------------------------------------------------------


class MessageBody(_ProviderModel):
    content: Union[str, List[ContentBlock]] = Field(default_factory=list)
    model: Optional[str] = None

    @property
    def blocks(self) -> List[ContentBlock]:
        if isinstance(self.content, str):
            return []
        return list(self.content)


class StreamEventMessage(_ProviderModel):
    """Partial assistant output: block lifecycle and deltas."""

    type: Literal["stream_event"]
    event: RawStreamEvent
    session_id: Optional[str] = None


class AssistantMessage(_ProviderModel):
    """Complete assistant message; authoritative text for the turn."""

    type: Literal["assistant"]
    message: MessageBody
    session_id: Optional[str] = None

    def text(self) -> str:
        return "".join(
            block.text for block in self.message.blocks if block.type == "text" and block.text
        )


class UserMessage(_ProviderModel):
    """Echo of tool results fed back to the model."""

    type: Literal["user"]
    message: MessageBody
    session_id: Optional[str] = None


class Usage(_ProviderModel):
    input_tokens: Optional[int] = 0
    output_tokens: Optional[int] = 0

    @property
    def total(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0)


class ModelUsage(_ProviderModel):
    context_window: Optional[int] = Field(None, alias="contextWindow")


class ResultPayload(_ProviderModel):
    content: List[ContentBlock] = Field(default_factory=list)


class ResultMessage(_ProviderModel):
    """Terminal message of a turn."""

    type: Literal["result"]
    subtype: str
    is_error: bool = False
    errors: List[str] = Field(default_factory=list)
    usage: Optional[Usage] = None
    model_usage: Dict[str, ModelUsage] = Field(default_factory=dict, alias="modelUsage")
    result: Optional[Union[ResultPayload, str]] = None
    session_id: Optional[str] = None

    @property
    def embedded_blocks(self) -> List[ContentBlock]:
        if isinstance(self.result, ResultPayload):
            return list(self.result.content)
        return []


class CompactMetadata(_ProviderModel):
    pre_tokens: int = 0
    trigger: Optional[str] = None


class SystemMessage(_ProviderModel):
    """Session lifecycle notices: ``init`` and ``compact_boundary``."""

    type: Literal["system"]
    subtype: str
    model: Optional[str] = None
    session_id: Optional[str] = None
    compact_metadata: Optional[CompactMetadata] = None


ProviderEvent = Annotated[
    Union[StreamEventMessage, AssistantMessage, UserMessage, ResultMessage, SystemMessage],
    Field(discriminator="type"),
]

PROVIDER_EVENT_TYPES = (
    StreamEventMessage,
    AssistantMessage,
    UserMessage,
    ResultMessage,
    SystemMessage,
)

_provider_event_adapter: TypeAdapter = TypeAdapter(ProviderEvent)


def decode_provider_event(raw: Any) -> Optional[ProviderEvent]:
    """Decode a raw provider message, or return None if it is not recognized.

    Already-decoded events pass through untouched.
    """
    if isinstance(raw, PROVIDER_EVENT_TYPES):
        return raw
    try:
        return _provider_event_adapter.validate_python(raw)
    except ValidationError as exc:
        kind = raw.get("type") if isinstance(raw, dict) else type(raw).__name__
        logger.warning(
            f"Skipping unrecognized provider event: {kind}",
            extra={"errors": exc.errors(include_url=False)[:3]},
        )
        return None


__all__ = [
    "ContentBlock",
    "TextDelta",
    "InputJsonDelta",
    "IgnoredDelta",
    "ContentBlockStart",
    "ContentBlockDelta",
    "ContentBlockStop",
    "StreamError",
    "StreamErrorDetail",
    "MessageLifecycle",
    "MessageBody",
    "StreamEventMessage",
    "AssistantMessage",
    "UserMessage",
    "Usage",
    "ModelUsage",
    "ResultPayload",
    "ResultMessage",
    "CompactMetadata",
    "SystemMessage",
    "ProviderEvent",
    "decode_provider_event",
]
