"""Pydantic models for chat sessions and the events they emit."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle state of the session for one key."""

    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_PERMISSION = "awaiting_permission"
    AWAITING_QUESTION = "awaiting_question"
    ERROR = "error"
    ABORTED = "aborted"


class ToolStatus(str, Enum):
    """Status of a tool invocation within a turn."""

    RUNNING = "running"
    COMPLETE = "complete"


class ErrorCode(str, Enum):
    """Codes carried by ``error`` session events."""

    PROVIDER_ERROR = "PROVIDER_ERROR"
    MAX_TURNS = "MAX_TURNS"
    MAX_BUDGET = "MAX_BUDGET"
    STRUCTURED_OUTPUT_RETRIES = "STRUCTURED_OUTPUT_RETRIES"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    STREAM_FAILED = "STREAM_FAILED"
    RESUME_FAILED = "RESUME_FAILED"


class ToolInvocation(BaseModel):
    """A single tool call made by the agent during a turn."""

    tool_use_id: str = Field(..., description="Provider tool_use id (unique per turn)")
    tool_name: str = Field(..., description="Tool name (e.g., 'Read')")
    status: ToolStatus = Field(default=ToolStatus.RUNNING, description="Lifecycle status")
    input: Optional[Any] = Field(None, description="Parsed tool input, once complete")
    output: Optional[Any] = Field(None, description="Provider-supplied tool output")


# ---------------------------------------------------------------------------
# Human-in-the-loop prompts
# ---------------------------------------------------------------------------


class PromptKind(str, Enum):
    TOOL_PERMISSION = "tool_permission"
    ASK_USER_QUESTION = "ask_user_question"


class QuestionOption(BaseModel):
    label: str
    description: Optional[str] = None


class QuestionItem(BaseModel):
    """One clarification question the agent wants answered."""

    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., description="Question text")
    header: Optional[str] = Field(None, description="Short label for the question")
    options: List[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(False, alias="multiSelect")


class PendingPrompt(BaseModel):
    """A permission or question request waiting on the user."""

    id: str = Field(..., description="Request id (the provider's tool_use id)")
    type: PromptKind
    description: str = Field(..., description="Human-readable summary of the request")
    tool_name: Optional[str] = None
    input: Optional[Any] = None
    questions: Optional[List[QuestionItem]] = None


class PermissionResponse(BaseModel):
    type: Literal["tool_permission"] = "tool_permission"
    allowed: bool


class QuestionResponse(BaseModel):
    type: Literal["ask_user_question"] = "ask_user_question"
    answers: Dict[str, str] = Field(default_factory=dict)


PromptResponse = Annotated[
    Union[PermissionResponse, QuestionResponse], Field(discriminator="type")
]


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------


class _SessionEventModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ResponseStartEvent(_SessionEventModel):
    type: Literal["response_start"] = "response_start"
    turn_id: str


class ResponseChunkEvent(_SessionEventModel):
    type: Literal["response_chunk"] = "response_chunk"
    turn_id: str
    content: str


class ResponseEndEvent(_SessionEventModel):
    type: Literal["response_end"] = "response_end"
    turn_id: str
    context_usage: Optional[int] = None
    duration_ms: int = 0


class ToolStartEvent(_SessionEventModel):
    type: Literal["tool_start"] = "tool_start"
    tool_use_id: str
    tool_name: str


class ToolInputEvent(_SessionEventModel):
    type: Literal["tool_input"] = "tool_input"
    tool_use_id: str
    input: Any = None


class ToolEndEvent(_SessionEventModel):
    type: Literal["tool_end"] = "tool_end"
    tool_use_id: str
    output: Any = None


class ErrorEvent(_SessionEventModel):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str


class PermissionRequestEvent(_SessionEventModel):
    type: Literal["permission_request"] = "permission_request"
    id: str
    description: str
    tool_name: Optional[str] = None
    input: Optional[Any] = None


class QuestionRequestEvent(_SessionEventModel):
    type: Literal["question_request"] = "question_request"
    id: str
    description: str
    questions: List[QuestionItem] = Field(default_factory=list)


class PromptResolvedEvent(_SessionEventModel):
    type: Literal["prompt_resolved"] = "prompt_resolved"
    id: str


class StateChangedEvent(_SessionEventModel):
    type: Literal["state_changed"] = "state_changed"
    state: SessionState


class SessionClearedEvent(_SessionEventModel):
    type: Literal["session_cleared"] = "session_cleared"


SessionEvent = Annotated[
    Union[
        ResponseStartEvent,
        ResponseChunkEvent,
        ResponseEndEvent,
        ToolStartEvent,
        ToolInputEvent,
        ToolEndEvent,
        ErrorEvent,
        PermissionRequestEvent,
        QuestionRequestEvent,
        PromptResolvedEvent,
        StateChangedEvent,
        SessionClearedEvent,
    ],
    Field(discriminator="type"),
]

SessionEventCallback = Callable[[SessionEvent], None]


# ---------------------------------------------------------------------------
# Streaming results and session state
# ---------------------------------------------------------------------------


@dataclass
class StreamerState:
    """Token accounting that survives across the turns of one session."""

    cumulative_tokens: int = 0
    context_window_size: Optional[int] = None
    active_model_id: Optional[str] = None

    def reset(self) -> None:
        self.cumulative_tokens = 0
        self.context_window_size = None
        self.active_model_id = None


class StreamingResult(BaseModel):
    """Outcome of streaming one turn."""

    content: str = Field("", description="Accumulated response text")
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    context_usage: Optional[int] = Field(None, description="Context window usage (0-100)")
    error: Optional[ErrorEvent] = Field(None, description="Turn-fatal error reported by the provider")
    aborted: bool = Field(False, description="Whether streaming stopped on cancellation")


class SessionSnapshot(BaseModel):
    """Pull-based view of a session for reconnecting clients."""

    session_key: str
    state: SessionState
    provider_session_id: Optional[str] = None
    turn_id: Optional[str] = None
    content: str = ""
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    pending_prompt: Optional[PendingPrompt] = None
    context_usage: Optional[int] = None
    cumulative_tokens: int = 0
    context_window_size: Optional[int] = None
    active_model_id: Optional[str] = None

    @property
    def is_processing(self) -> bool:
        return self.state in BUSY_STATES


BUSY_STATES = frozenset(
    {
        SessionState.STREAMING,
        SessionState.AWAITING_PERMISSION,
        SessionState.AWAITING_QUESTION,
        SessionState.ABORTED,
    }
)


class PromptSubmission(BaseModel):
    """Answer to ``submit_prompt``: accepted, or rejected with a reason."""

    accepted: bool
    reason: Optional[str] = None
    turn_id: Optional[str] = None


class PromptResolution(BaseModel):
    """Answer to a permission/question resolution attempt."""

    accepted: bool
    reason: Optional[str] = None


__all__ = [
    "SessionState",
    "ToolStatus",
    "ErrorCode",
    "ToolInvocation",
    "PromptKind",
    "QuestionOption",
    "QuestionItem",
    "PendingPrompt",
    "PermissionResponse",
    "QuestionResponse",
    "PromptResponse",
    "ResponseStartEvent",
    "ResponseChunkEvent",
    "ResponseEndEvent",
    "ToolStartEvent",
    "ToolInputEvent",
    "ToolEndEvent",
    "ErrorEvent",
    "PermissionRequestEvent",
    "QuestionRequestEvent",
    "PromptResolvedEvent",
    "StateChangedEvent",
    "SessionClearedEvent",
    "SessionEvent",
    "SessionEventCallback",
    "StreamerState",
    "StreamingResult",
    "SessionSnapshot",
    "BUSY_STATES",
    "PromptSubmission",
    "PromptResolution",
]
