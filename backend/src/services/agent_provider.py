"""Agent provider abstraction.

The session controller never talks to a concrete AI-agent backend directly.
It asks an ``AgentProvider`` to start a turn and receives a ``ProviderTurn``
whose event stream is fed to the session streamer. Human-in-the-loop pauses
are exposed to the provider as two awaitable callbacks on the TurnRequest.
"""

from __future__ import annotations

import abc
import importlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..models.session import QuestionItem
from ..models.vault import VaultInfo
from .config import AppConfig

logger = logging.getLogger(__name__)

# (tool_use_id, tool_name, input) -> allowed
PermissionCallback = Callable[[str, str, Dict[str, Any]], Awaitable[bool]]
# (tool_use_id, questions) -> answers keyed by question text
QuestionCallback = Callable[[str, List[QuestionItem]], Awaitable[Dict[str, str]]]

GENERIC_FAILURE_MESSAGE = "The agent connection failed. Send a new message to retry."

FAILURE_PATTERNS = (
    ("ENOENT", "Agent executable not found. Please check the provider installation."),
    ("EACCES", "Permission denied. Unable to access required resources."),
    ("authentication", "Authentication failed. Please check the provider API key."),
    ("rate_limit", "Rate limit exceeded. Please try again later."),
    ("billing", "Billing error. Please check the provider account."),
    ("invalid_request", "Invalid request. The session or prompt may be malformed."),
    ("server_error", "Server error. The provider is temporarily unavailable."),
)


class AgentProviderError(Exception):
    """Raised when a provider cannot be loaded or cannot start a turn."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass
class TurnRequest:
    """Everything a provider needs to run one turn."""

    session_key: str
    vault: VaultInfo
    prompt: str
    can_use_tool: PermissionCallback
    ask_user_question: QuestionCallback
    resume_session_id: Optional[str] = None


class ProviderTurn(abc.ABC):
    """A running turn: its provider session id and its raw event stream."""

    session_id: str

    @abc.abstractmethod
    def events(self) -> AsyncIterator[Any]:
        """Provider messages for this turn, as mappings or decoded events."""

    @abc.abstractmethod
    async def interrupt(self) -> None:
        """Ask the provider to stop the turn; the event stream should then end."""

    async def close(self) -> None:
        """Release provider resources once the turn is over."""
        return None


class AgentProvider(abc.ABC):
    """Factory for provider turns."""

    name: str = "provider"

    @abc.abstractmethod
    async def start_turn(self, request: TurnRequest) -> ProviderTurn:
        """Start a turn for ``request.prompt``, resuming ``request.resume_session_id`` if set."""


def describe_provider_failure(error: BaseException) -> str:
    """Map a provider failure to a fixed, user-facing message."""
    text = str(error)
    for pattern, message in FAILURE_PATTERNS:
        if pattern in text:
            return message
    return GENERIC_FAILURE_MESSAGE


def load_agent_provider(config: AppConfig) -> AgentProvider:
    """Build the configured provider: 'mock' or a 'module:factory' import path."""
    provider_path = config.agent_provider.strip()
    if provider_path == "mock":
        from .mock_provider import MockAgentProvider

        return MockAgentProvider(chunk_delay=config.mock_chunk_delay_ms / 1000)

    module_name, _, attr = provider_path.partition(":")
    if not module_name or not attr:
        raise AgentProviderError(
            f"Invalid AGENT_PROVIDER '{provider_path}'; expected 'mock' or 'module:factory'",
            {"agent_provider": provider_path},
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise AgentProviderError(
            f"Cannot load agent provider '{provider_path}': {exc}", {"agent_provider": provider_path}
        ) from exc

    provider = factory(config)
    if not isinstance(provider, AgentProvider):
        raise AgentProviderError(
            f"Provider factory '{provider_path}' did not return an AgentProvider",
            {"agent_provider": provider_path},
        )
    logger.info(f"Loaded agent provider: {provider_path}")
    return provider


__all__ = [
    "AgentProvider",
    "AgentProviderError",
    "ProviderTurn",
    "TurnRequest",
    "PermissionCallback",
    "QuestionCallback",
    "GENERIC_FAILURE_MESSAGE",
    "describe_provider_failure",
    "load_agent_provider",
]
