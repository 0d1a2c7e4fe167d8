"""Pydantic models for data validation and serialization."""

from .chat import AbortResponse, ChatRequest, HealthResponse, ResetResponse
from .provider import ProviderEvent, decode_provider_event
from .session import (
    ErrorCode,
    PendingPrompt,
    PromptResponse,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    StreamerState,
    StreamingResult,
    ToolInvocation,
)
from .vault import VaultInfo, VaultSummary

__all__ = [
    "ChatRequest",
    "AbortResponse",
    "ResetResponse",
    "HealthResponse",
    "ProviderEvent",
    "decode_provider_event",
    "ErrorCode",
    "PendingPrompt",
    "PromptResponse",
    "SessionEvent",
    "SessionSnapshot",
    "SessionState",
    "StreamerState",
    "StreamingResult",
    "ToolInvocation",
    "VaultInfo",
    "VaultSummary",
]
