"""Service layer for session streaming and vault integrations."""

from .agent_provider import (
    AgentProvider,
    AgentProviderError,
    ProviderTurn,
    TurnRequest,
    load_agent_provider,
)
from .config import AppConfig, get_config, reload_config
from .mock_provider import MockAgentProvider
from .session_controller import SessionController, SessionControllerError, SessionRegistry
from .session_streamer import CancellationToken, SessionStreamer, stream_provider_events
from .transcript import TranscriptError, TranscriptService
from .vault import VaultNotFoundError, VaultService

__all__ = [
    "AppConfig",
    "get_config",
    "reload_config",
    "AgentProvider",
    "AgentProviderError",
    "ProviderTurn",
    "TurnRequest",
    "load_agent_provider",
    "MockAgentProvider",
    "SessionController",
    "SessionControllerError",
    "SessionRegistry",
    "CancellationToken",
    "SessionStreamer",
    "stream_provider_events",
    "TranscriptService",
    "TranscriptError",
    "VaultService",
    "VaultNotFoundError",
]
